"""``ChatClient`` implementation over the Slack Web API."""

from __future__ import annotations

import logging

from slack_sdk.web.async_client import AsyncWebClient

from flowmate.chat.formatter import FormattedResponse, markdown_block

logger = logging.getLogger(__name__)

OVERFLOW_FILENAME = "result.md"


class SlackChatClient:
    """Posts replies and drives the assistant-thread status and title."""

    def __init__(self, client: AsyncWebClient) -> None:
        self._client = client

    async def post_message(self, channel: str, thread_ts: str, text: str) -> str | None:
        response = await self._client.chat_postMessage(
            channel=channel,
            thread_ts=thread_ts,
            blocks=[markdown_block(text)],
            text=text,
        )
        return response.get("ts")

    async def post_response(
        self,
        channel: str,
        thread_ts: str,
        response: FormattedResponse,
    ) -> str | None:
        posted = await self._client.chat_postMessage(
            channel=channel,
            thread_ts=thread_ts,
            blocks=response.blocks,
            text=response.fallback_text,
        )
        if response.overflow is not None:
            logger.info("Reply exceeds block limit, uploading full text as %s", OVERFLOW_FILENAME)
            await self._client.files_upload_v2(
                channel=channel,
                thread_ts=thread_ts,
                content=response.overflow,
                filename=OVERFLOW_FILENAME,
                title="Full Result",
            )
        return posted.get("ts")

    async def set_status(self, channel: str, thread_ts: str, status: str) -> None:
        await self._client.assistant_threads_setStatus(
            channel_id=channel,
            thread_ts=thread_ts,
            status=status,
        )

    async def set_title(self, channel: str, thread_ts: str, title: str) -> None:
        await self._client.assistant_threads_setTitle(
            channel_id=channel,
            thread_ts=thread_ts,
            title=title,
        )
