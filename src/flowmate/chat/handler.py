"""Platform-agnostic handling of one inbound chat message."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from flowmate.chat.formatter import FormattedResponse, format_response
from flowmate.models import Attachment, ConversationView, MessageRole
from flowmate.orchestrator.execution import ExecutionService
from flowmate.storage.repository import FlowmateRepository

logger = logging.getLogger(__name__)

BUSY_TEXT = ":hourglass: A task is already running in this thread. Please wait for it to finish."
PROCESSING_STATUS = "Processing..."
IMAGE_PLACEHOLDER = "[image]"
DEFAULT_TITLE = "Task"
TITLE_LIMIT = 50
PROGRESS_PREVIEW_LIMIT = 200

AttachmentLoader = Callable[[], Awaitable[tuple[list[Attachment], list[str]]]]


class ChatClient(Protocol):
    """Outbound operations the handler needs from a chat platform."""

    async def post_message(self, channel: str, thread_ts: str, text: str) -> str | None:
        """Post markdown text to a thread; returns the platform message id."""

    async def post_response(
        self,
        channel: str,
        thread_ts: str,
        response: FormattedResponse,
    ) -> str | None:
        """Post a formatted agent reply; returns the platform message id."""

    async def set_status(self, channel: str, thread_ts: str, status: str) -> None:
        """Show (or clear, with an empty string) the thread's activity status."""

    async def set_title(self, channel: str, thread_ts: str, title: str) -> None:
        """Set the thread title shown in history views."""


class HandleOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    IGNORED = "ignored"


@dataclass(slots=True)
class IncomingMessage:
    """A user message already filtered by the platform adapter.

    ``load_attachments`` is called only once the thread lock is held, so a
    rejected message never downloads anything.
    """

    channel: str
    thread_ts: str
    user: str
    text: str
    ts: str | None = None
    attachments: Sequence[Attachment] = ()
    warnings: Sequence[str] = ()
    load_attachments: AttachmentLoader | None = None
    expects_attachments: bool = False

    @property
    def thread_key(self) -> str:
        return f"{self.channel}:{self.thread_ts}"


class ChatMessageHandler:
    """Runs one execution per message, at most one per thread at a time."""

    def __init__(
        self,
        *,
        repository: FlowmateRepository,
        execution_service: ExecutionService,
        client: ChatClient,
    ) -> None:
        self.repository = repository
        self.execution_service = execution_service
        self.client = client
        self._busy_threads: set[str] = set()

    def is_busy(self, channel: str, thread_ts: str) -> bool:
        return f"{channel}:{thread_ts}" in self._busy_threads

    async def handle(self, message: IncomingMessage) -> HandleOutcome:
        key = message.thread_key
        if key in self._busy_threads:
            logger.info("Rejecting message in busy thread %s", key)
            await self.client.post_message(message.channel, message.thread_ts, BUSY_TEXT)
            return HandleOutcome.BUSY

        has_images = bool(message.attachments) or message.expects_attachments
        if not message.text.strip() and not has_images:
            return HandleOutcome.IGNORED

        self._busy_threads.add(key)
        try:
            return await self._process(message)
        finally:
            self._busy_threads.discard(key)

    async def _process(self, message: IncomingMessage) -> HandleOutcome:
        channel, thread_ts = message.channel, message.thread_ts
        logger.info(
            "Message received: user=%s thread=%s images=%s",
            message.user,
            message.thread_key,
            bool(message.attachments) or message.expects_attachments,
        )
        conversation = self.repository.get_or_create_conversation(
            channel_id=channel,
            thread_ts=thread_ts,
            user_id=message.user,
        )
        self.repository.save_message(
            conversation_id=conversation.id,
            role=MessageRole.USER,
            content=message.text or IMAGE_PLACEHOLDER,
            slack_ts=message.ts,
        )

        try:
            attachments = list(message.attachments)
            warnings = list(message.warnings)
            if message.load_attachments is not None:
                loaded, load_warnings = await message.load_attachments()
                attachments.extend(loaded)
                warnings.extend(load_warnings)
            if warnings:
                await self.client.post_message(channel, thread_ts, "\n".join(warnings))

            await self.client.set_status(channel, thread_ts, PROCESSING_STATUS)

            async def report_progress(text: str) -> None:
                await self._report_progress(channel, thread_ts, text)

            result = await self.execution_service.execute(
                conversation,
                message.text,
                attachments=attachments,
                on_progress=report_progress,
            )
            await self.client.set_status(channel, thread_ts, "")

            reply_ts = await self.client.post_response(
                channel,
                thread_ts,
                format_response(result.text),
            )
            await self._set_title(conversation, message.text)
            self.repository.save_message(
                conversation_id=conversation.id,
                role=MessageRole.ASSISTANT,
                content=result.text,
                slack_ts=reply_ts,
                execution_id=result.execution_id,
            )
            logger.info(
                "Execution %s completed for %s (cost=$%.4f)",
                result.execution_id,
                message.thread_key,
                result.cost_usd,
            )
            return HandleOutcome.COMPLETED
        except Exception as error:
            logger.error("Execution failed for %s: %s", message.thread_key, error, exc_info=True)
            await self._report_failure(message, conversation.id, error)
            return HandleOutcome.FAILED

    async def _report_progress(self, channel: str, thread_ts: str, text: str) -> None:
        preview = text
        if len(preview) > PROGRESS_PREVIEW_LIMIT:
            preview = preview[:PROGRESS_PREVIEW_LIMIT] + "..."
        try:
            await self.client.set_status(channel, thread_ts, preview)
        except Exception:
            logger.exception("Progress update failed for %s:%s", channel, thread_ts)

    async def _set_title(self, conversation: ConversationView, prompt: str) -> None:
        if conversation.title is not None:
            return
        title = prompt.strip()[:TITLE_LIMIT] or DEFAULT_TITLE
        self.repository.update_conversation(conversation_id=conversation.id, title=title)
        try:
            await self.client.set_title(conversation.channel_id, conversation.thread_ts, title)
        except Exception as error:
            logger.debug("Setting thread title failed: %s", error)

    async def _report_failure(
        self,
        message: IncomingMessage,
        conversation_id: int,
        error: Exception,
    ) -> None:
        try:
            await self.client.set_status(message.channel, message.thread_ts, "")
        except Exception as status_error:
            logger.debug("Clearing status failed: %s", status_error)

        error_text = str(error) or "Unknown error occurred"
        error_ts: str | None = None
        try:
            error_ts = await self.client.post_message(
                message.channel,
                message.thread_ts,
                f":x: Error: {error_text}",
            )
        except Exception:
            logger.exception("Posting error notice to %s failed", message.thread_key)
        self.repository.save_message(
            conversation_id=conversation_id,
            role=MessageRole.ASSISTANT,
            content=f"Error: {error_text}",
            slack_ts=error_ts,
        )
