"""Image attachment filtering and download for Slack file shares."""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from flowmate.models import Attachment

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
MAX_IMAGES = 5
MAX_IMAGE_BYTES = 5 * 1024 * 1024
DOWNLOAD_TIMEOUT_SECONDS = 30.0


@dataclass(slots=True)
class FileTriage:
    """Slack files split by what can be handed to the agent."""

    images: list[dict[str, Any]]
    oversized: list[dict[str, Any]]
    unsupported: list[dict[str, Any]]

    @property
    def accepted(self) -> list[dict[str, Any]]:
        """Images within the size limit, capped at ``MAX_IMAGES``."""

        return [f for f in self.images if int(f.get("size") or 0) <= MAX_IMAGE_BYTES][:MAX_IMAGES]

    def rejection_reason(self) -> str:
        reasons: list[str] = []
        if self.unsupported:
            types = ", ".join(sorted({str(f.get("mimetype")) for f in self.unsupported}))
            reasons.append(f"Unsupported format ({types}). Supported: JPEG, PNG, GIF, WebP")
        if self.oversized:
            reasons.append("Image exceeds 5MB limit")
        return ". ".join(reasons)

    def warnings(self) -> list[str]:
        notes: list[str] = []
        if len(self.images) > MAX_IMAGES:
            notes.append(
                f":info: Only the first {MAX_IMAGES} of {len(self.images)} images "
                "will be processed.",
            )
        if self.oversized and self.images:
            notes.append(
                f":warning: {len(self.oversized)} image(s) skipped (exceeds 5MB limit).",
            )
        return notes


def triage_files(files: Sequence[dict[str, Any]]) -> FileTriage:
    images: list[dict[str, Any]] = []
    oversized: list[dict[str, Any]] = []
    unsupported: list[dict[str, Any]] = []
    for entry in files:
        if entry.get("mimetype") not in SUPPORTED_IMAGE_TYPES:
            unsupported.append(entry)
            continue
        if int(entry.get("size") or 0) > MAX_IMAGE_BYTES:
            oversized.append(entry)
        if entry.get("url_private"):
            images.append(entry)
    return FileTriage(images=images, oversized=oversized, unsupported=unsupported)


async def download_images(
    files: Sequence[dict[str, Any]],
    *,
    bot_token: str,
    http_client: httpx.AsyncClient | None = None,
) -> list[Attachment]:
    """Fetch images as base64 attachments; failed downloads are logged and skipped.

    Slack answers with a redirect to a signed CDN URL. Redirects are followed
    by hand so the bot token is sent only to Slack itself.
    """

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        follow_redirects=False,
        timeout=DOWNLOAD_TIMEOUT_SECONDS,
    )
    attachments: list[Attachment] = []
    try:
        for entry in files:
            name = str(entry.get("name") or "image")
            try:
                content = await _fetch(client, str(entry["url_private"]), bot_token, name)
            except (httpx.HTTPError, KeyError) as error:
                logger.error("Failed to download image %s: %s", name, error)
                continue
            if content is None:
                continue
            attachments.append(
                Attachment(
                    filename=name,
                    mime_type=str(entry.get("mimetype")),
                    base64=base64.b64encode(content).decode("ascii"),
                ),
            )
            logger.debug("Downloaded image %s (%d bytes)", name, len(content))
    finally:
        if owns_client:
            await client.aclose()
    return attachments


async def _fetch(
    client: httpx.AsyncClient,
    url: str,
    bot_token: str,
    name: str,
) -> bytes | None:
    response = await client.get(url, headers={"Authorization": f"Bearer {bot_token}"})
    if response.is_redirect:
        location = response.headers.get("location")
        if not location:
            logger.warning("Redirect without location header for %s", name)
            return None
        response = await client.get(location)
    if not response.is_success:
        logger.warning("Image download failed for %s: HTTP %s", name, response.status_code)
        return None
    content_type = response.headers.get("content-type", "")
    if not content_type.startswith("image/"):
        logger.warning("Downloaded file %s is not an image (%s), skipping", name, content_type)
        return None
    return response.content
