from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import allure
import pytest

from flowmate.chat.formatter import format_response
from flowmate.chat.handler import IncomingMessage
from flowmate.slack.app import SUGGESTED_PROMPTS, register_handlers
from flowmate.slack.client import OVERFLOW_FILENAME, SlackChatClient

pytestmark = [
    allure.epic("Chat Surface"),
    allure.feature("Slack Adapter"),
]


class RecordingWebClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def chat_postMessage(self, **kwargs: Any) -> dict[str, Any]:  # noqa: N802
        self.calls.append(("chat_postMessage", kwargs))
        return {"ok": True, "ts": "1700000001.000200"}

    async def files_upload_v2(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("files_upload_v2", kwargs))
        return {"ok": True}

    async def assistant_threads_setStatus(self, **kwargs: Any) -> dict[str, Any]:  # noqa: N802
        self.calls.append(("assistant_threads_setStatus", kwargs))
        return {"ok": True}

    async def assistant_threads_setTitle(self, **kwargs: Any) -> dict[str, Any]:  # noqa: N802
        self.calls.append(("assistant_threads_setTitle", kwargs))
        return {"ok": True}

    async def assistant_threads_setSuggestedPrompts(  # noqa: N802
        self,
        **kwargs: Any,
    ) -> dict[str, Any]:
        self.calls.append(("assistant_threads_setSuggestedPrompts", kwargs))
        return {"ok": True}

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class CapturingApp:
    def __init__(self) -> None:
        self.listeners: dict[str, Any] = {}

    def event(self, name: str):  # noqa: ANN201
        def decorator(func):  # noqa: ANN001, ANN202
            self.listeners[name] = func
            return func

        return decorator


class RecordingHandler:
    def __init__(self, *, busy: bool = False) -> None:
        self.busy = busy
        self.messages: list[IncomingMessage] = []

    def is_busy(self, channel: str, thread_ts: str) -> bool:  # noqa: ARG002
        return self.busy

    async def handle(self, message: IncomingMessage) -> None:
        self.messages.append(message)


def _register(
    handler: RecordingHandler,
    *,
    allowed: tuple[str, ...] = (),
) -> CapturingApp:
    app = CapturingApp()
    settings = SimpleNamespace(
        slack=SimpleNamespace(allowed_user_ids=allowed, bot_token="xoxb-test"),
    )
    register_handlers(app, handler=handler, bot_user_id="UBOT", settings=settings)
    return app


def _dm(**overrides: Any) -> dict[str, Any]:
    event = {
        "channel": "D123",
        "channel_type": "im",
        "user": "U1",
        "text": "hello",
        "ts": "1700000000.000100",
    }
    event.update(overrides)
    return event


@pytest.mark.asyncio
async def test_client_posts_markdown_and_returns_ts() -> None:
    web = RecordingWebClient()
    client = SlackChatClient(web)

    ts = await client.post_message("D123", "1700000000.000100", "Hi *there*")

    assert ts == "1700000001.000200"
    name, kwargs = web.calls[0]
    assert name == "chat_postMessage"
    assert kwargs["blocks"] == [{"type": "markdown", "text": "Hi *there*"}]
    assert kwargs["text"] == "Hi *there*"
    assert kwargs["thread_ts"] == "1700000000.000100"


@pytest.mark.asyncio
async def test_client_uploads_overflow_as_file() -> None:
    web = RecordingWebClient()
    client = SlackChatClient(web)
    long_text = "x" * 13_000

    await client.post_response("D123", "1700000000.000100", format_response(long_text))

    assert web.names() == ["chat_postMessage", "files_upload_v2"]
    upload = web.calls[1][1]
    assert upload["filename"] == OVERFLOW_FILENAME
    assert upload["content"] == long_text


@pytest.mark.asyncio
async def test_client_status_and_title_use_assistant_threads() -> None:
    web = RecordingWebClient()
    client = SlackChatClient(web)

    await client.set_status("D123", "1.0", "Processing...")
    await client.set_title("D123", "1.0", "Plan a trip")

    assert web.calls == [
        (
            "assistant_threads_setStatus",
            {"channel_id": "D123", "thread_ts": "1.0", "status": "Processing..."},
        ),
        (
            "assistant_threads_setTitle",
            {"channel_id": "D123", "thread_ts": "1.0", "title": "Plan a trip"},
        ),
    ]


@pytest.mark.asyncio
async def test_direct_message_is_handed_to_chat_handler() -> None:
    handler = RecordingHandler()
    app = _register(handler)

    await app.listeners["message"](_dm(), RecordingWebClient())

    assert len(handler.messages) == 1
    message = handler.messages[0]
    assert (message.channel, message.thread_ts, message.user, message.text) == (
        "D123",
        "1700000000.000100",
        "U1",
        "hello",
    )
    assert message.expects_attachments is False
    assert await message.load_attachments() == ([], [])


@pytest.mark.asyncio
async def test_thread_reply_keeps_parent_thread() -> None:
    handler = RecordingHandler()
    app = _register(handler)

    await app.listeners["message"](
        _dm(ts="1700000050.000000", thread_ts="1700000000.000100"),
        RecordingWebClient(),
    )

    assert handler.messages[0].thread_ts == "1700000000.000100"
    assert handler.messages[0].ts == "1700000050.000000"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"channel_type": "channel"},
        {"subtype": "message_changed"},
        {"bot_id": "B1"},
        {"user": "UBOT"},
        {"user": None},
    ],
)
async def test_non_user_direct_messages_are_dropped(overrides: dict[str, Any]) -> None:
    handler = RecordingHandler()
    app = _register(handler)

    await app.listeners["message"](_dm(**overrides), RecordingWebClient())

    assert handler.messages == []


@pytest.mark.asyncio
async def test_allow_list_blocks_other_users() -> None:
    handler = RecordingHandler()
    app = _register(handler, allowed=("U2",))

    await app.listeners["message"](_dm(user="U1"), RecordingWebClient())
    await app.listeners["message"](_dm(user="U2"), RecordingWebClient())

    assert [message.user for message in handler.messages] == ["U2"]


@pytest.mark.asyncio
async def test_unsupported_file_without_text_gets_warning() -> None:
    handler = RecordingHandler()
    app = _register(handler)
    web = RecordingWebClient()
    pdf = {"name": "a.pdf", "mimetype": "application/pdf", "size": 10, "url_private": "u"}

    await app.listeners["message"](_dm(text="", subtype="file_share", files=[pdf]), web)

    assert handler.messages == []
    assert web.names() == ["chat_postMessage"]
    assert "Unsupported format (application/pdf)" in web.calls[0][1]["text"]


@pytest.mark.asyncio
async def test_unsupported_file_in_busy_thread_is_silent() -> None:
    handler = RecordingHandler(busy=True)
    app = _register(handler)
    web = RecordingWebClient()
    pdf = {"name": "a.pdf", "mimetype": "application/pdf", "size": 10, "url_private": "u"}

    await app.listeners["message"](_dm(text="", subtype="file_share", files=[pdf]), web)

    assert web.calls == []


@pytest.mark.asyncio
async def test_image_message_defers_download_to_handler() -> None:
    handler = RecordingHandler()
    app = _register(handler)
    png = {
        "name": "a.png",
        "mimetype": "image/png",
        "size": 10,
        "url_private": "https://files.slack.com/a.png",
    }

    await app.listeners["message"](
        _dm(text="", subtype="file_share", files=[png]),
        RecordingWebClient(),
    )

    assert len(handler.messages) == 1
    assert handler.messages[0].expects_attachments is True
    assert handler.messages[0].load_attachments is not None


@pytest.mark.asyncio
async def test_assistant_thread_start_sets_suggested_prompts() -> None:
    app = _register(RecordingHandler())
    web = RecordingWebClient()

    await app.listeners["assistant_thread_started"](
        {"assistant_thread": {"channel_id": "D123", "thread_ts": "1.0"}},
        web,
    )

    assert web.calls == [
        (
            "assistant_threads_setSuggestedPrompts",
            {"channel_id": "D123", "thread_ts": "1.0", "prompts": list(SUGGESTED_PROMPTS)},
        ),
    ]
