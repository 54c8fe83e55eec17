"""Render agent replies as chat blocks: markdown prose plus at most one native table."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

MARKDOWN_BLOCK_LIMIT = 12_000
FALLBACK_TEXT_LIMIT = 200
OVERFLOW_NOTICE = "\n\n... _(full result attached as file)_"

_TABLE_RE = re.compile(r"(?:^\|.+\|$\n?)+", re.MULTILINE)
_SEPARATOR_RE = re.compile(r"^\|([\s\-:]+\|)+$")
_CELL_MARKUP = (
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"__(.+?)__"), r"\1"),
    (re.compile(r"\*(.+?)\*"), r"\1"),
    (re.compile(r"_(.+?)_"), r"\1"),
    (re.compile(r"`(.+?)`"), r"\1"),
)


@dataclass(slots=True)
class FormattedResponse:
    """Blocks to post, plain-text notification fallback, and the full text when truncated."""

    blocks: list[dict[str, Any]]
    fallback_text: str
    overflow: str | None = None


def markdown_block(text: str) -> dict[str, Any]:
    return {"type": "markdown", "text": text}


def format_response(text: str) -> FormattedResponse:
    """Split ``text`` into blocks, truncating very long replies."""

    fallback = text if len(text) <= FALLBACK_TEXT_LIMIT else text[:FALLBACK_TEXT_LIMIT] + "..."
    overflow = text if len(text) > MARKDOWN_BLOCK_LIMIT else None
    content = text
    if overflow is not None:
        content = text[: MARKDOWN_BLOCK_LIMIT - 100] + OVERFLOW_NOTICE
    return FormattedResponse(
        blocks=split_into_blocks(content),
        fallback_text=fallback,
        overflow=overflow,
    )


def split_into_blocks(text: str) -> list[dict[str, Any]]:
    """Alternate markdown and table blocks.

    Only one table block is allowed per message, so tables after the first one
    are kept as fenced code to preserve their alignment.
    """

    blocks: list[dict[str, Any]] = []
    last_index = 0
    table_used = False

    for match in _TABLE_RE.finditer(text):
        table_text = match.group(0)
        lines = table_text.rstrip().split("\n")
        if not any(_SEPARATOR_RE.match(line) for line in lines):
            continue

        before = text[last_index : match.start()].strip()
        if before:
            blocks.append(markdown_block(before))

        if not table_used:
            blocks.append(parse_markdown_table(table_text))
            table_used = True
        else:
            blocks.append(markdown_block(f"```\n{table_text.rstrip()}\n```"))
        last_index = match.end()

    remaining = text[last_index:].strip()
    if remaining:
        blocks.append(markdown_block(remaining))
    return blocks


def parse_markdown_table(table_text: str) -> dict[str, Any]:
    rows: list[list[dict[str, str]]] = []
    for line in table_text.rstrip().split("\n"):
        if _SEPARATOR_RE.match(line):
            continue
        inner = line.removeprefix("|").removesuffix("|")
        rows.append([_parse_cell(cell) for cell in inner.split("|")])
    return {"type": "table", "rows": rows}


def _parse_cell(raw: str) -> dict[str, str]:
    text = raw.strip()
    for pattern, replacement in _CELL_MARKUP:
        text = pattern.sub(replacement, text)
    return {"type": "raw_text", "text": text}
