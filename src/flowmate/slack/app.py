"""Slack Bolt wiring: direct-message events in, chat handler calls out."""

from __future__ import annotations

import logging
from typing import Any

from slack_bolt.async_app import AsyncApp
from slack_sdk.web.async_client import AsyncWebClient

from flowmate.chat.formatter import markdown_block
from flowmate.chat.handler import ChatMessageHandler, IncomingMessage
from flowmate.config import Settings
from flowmate.models import Attachment
from flowmate.slack.images import download_images, triage_files

logger = logging.getLogger(__name__)

SUGGESTED_PROMPTS = (
    {"title": "Summarize", "message": "Summarize the following:"},
    {"title": "Code Review", "message": "Review this code and suggest improvements:"},
    {"title": "Explain", "message": "Explain this concept in simple terms:"},
    {"title": "Debug", "message": "Help me debug this issue:"},
)
_ACCEPTED_SUBTYPES = frozenset({None, "file_share"})


async def create_slack_app(settings: Settings) -> tuple[AsyncApp, str]:
    """Build the Bolt app and resolve the bot's own user id."""

    app = AsyncApp(token=settings.slack.bot_token)
    auth = await app.client.auth_test()
    bot_user_id = str(auth.get("user_id") or "")
    logger.info("Connected to Slack as %s", bot_user_id)
    return app, bot_user_id


def register_handlers(
    app: AsyncApp,
    *,
    handler: ChatMessageHandler,
    bot_user_id: str,
    settings: Settings,
) -> None:
    """Attach assistant-thread and direct-message listeners to ``app``."""

    allowed_users = settings.slack.allowed_user_ids
    bot_token = settings.slack.bot_token

    @app.event("assistant_thread_started")
    async def on_assistant_thread_started(event: dict[str, Any], client: AsyncWebClient) -> None:
        thread = event.get("assistant_thread", {})
        logger.info(
            "Assistant thread started: channel=%s thread=%s",
            thread.get("channel_id"),
            thread.get("thread_ts"),
        )
        await client.assistant_threads_setSuggestedPrompts(
            channel_id=thread["channel_id"],
            thread_ts=thread["thread_ts"],
            prompts=list(SUGGESTED_PROMPTS),
        )

    @app.event("assistant_thread_context_changed")
    async def on_assistant_thread_context_changed(event: dict[str, Any]) -> None:
        thread = event.get("assistant_thread", {})
        logger.debug(
            "Assistant thread context changed: channel=%s thread=%s",
            thread.get("channel_id"),
            thread.get("thread_ts"),
        )

    @app.event("message")
    async def on_message(event: dict[str, Any], client: AsyncWebClient) -> None:
        if event.get("subtype") not in _ACCEPTED_SUBTYPES:
            return
        if event.get("channel_type") != "im":
            return
        user = event.get("user")
        if event.get("bot_id") or not user or user == bot_user_id:
            return
        if allowed_users and user not in allowed_users:
            logger.warning("Ignoring message from unauthorized user %s", user)
            return

        channel = str(event["channel"])
        thread_ts = str(event.get("thread_ts") or event["ts"])
        text = str(event.get("text") or "")
        triage = triage_files(event.get("files") or [])
        accepted = triage.accepted

        if not text.strip() and (triage.unsupported or triage.oversized) and not accepted:
            if handler.is_busy(channel, thread_ts):
                return
            reason = triage.rejection_reason()
            await client.chat_postMessage(
                channel=channel,
                thread_ts=thread_ts,
                blocks=[markdown_block(f":warning: {reason}")],
                text=reason,
            )
            return

        async def load_attachments() -> tuple[list[Attachment], list[str]]:
            warnings = triage.warnings()
            if not accepted or not bot_token:
                return [], warnings
            attachments = await download_images(accepted, bot_token=bot_token)
            if not attachments:
                warnings.insert(0, ":warning: Failed to load image(s).")
            elif len(attachments) < len(accepted):
                warnings.insert(
                    0,
                    f":warning: {len(accepted) - len(attachments)} image(s) failed to load.",
                )
            return attachments, warnings

        await handler.handle(
            IncomingMessage(
                channel=channel,
                thread_ts=thread_ts,
                user=str(user),
                text=text,
                ts=event.get("ts"),
                load_attachments=load_attachments,
                expects_attachments=bool(accepted),
            ),
        )
