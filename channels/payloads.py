"""
Outbound payload shapes for the WhatsApp Cloud API.

Builds the three message kinds the bot sends (text, reply buttons, list)
and applies the provider's field-length limits before anything is
persisted or transmitted. Truncation is idempotent: a value already within
its limit is returned unchanged.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence

import structlog

logger = structlog.get_logger()

MAX_BUTTON_TITLE = 20
MAX_HEADER = 60
MAX_BODY = 1024
MAX_FOOTER = 60
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_LIST_BUTTON = 20
MAX_BUTTONS = 3
MAX_ROWS = 10

Button = tuple[str, str]                              # (id, title)
ListRow = tuple[str, str, Optional[str]]              # (id, title, description)


def truncate(text: Optional[str], limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit]


def text_payload(to: str, body: str) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": body},
    }


def _decorate(interactive: dict[str, Any], header: Optional[str], footer: Optional[str]) -> None:
    if header:
        interactive["header"] = {"type": "text", "text": truncate(header, MAX_HEADER)}
    if footer:
        interactive["footer"] = {"text": truncate(footer, MAX_FOOTER)}


def buttons_payload(
    to: str,
    body: str,
    buttons: Sequence[Button],
    header: Optional[str] = None,
    footer: Optional[str] = None,
) -> dict[str, Any]:
    if len(buttons) > MAX_BUTTONS:
        logger.warning("buttons_truncated", to=to, requested=len(buttons), kept=MAX_BUTTONS)
        buttons = buttons[:MAX_BUTTONS]

    interactive: dict[str, Any] = {
        "type": "button",
        "body": {"text": truncate(body, MAX_BODY)},
        "action": {
            "buttons": [
                {"type": "reply", "reply": {"id": bid, "title": truncate(title, MAX_BUTTON_TITLE)}}
                for bid, title in buttons
            ],
        },
    }
    _decorate(interactive, header, footer)
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "interactive",
        "interactive": interactive,
    }


def list_payload(
    to: str,
    body: str,
    button_label: str,
    rows: Sequence[ListRow],
    header: Optional[str] = None,
    footer: Optional[str] = None,
) -> dict[str, Any]:
    if len(rows) > MAX_ROWS:
        logger.warning("list_rows_truncated", to=to, requested=len(rows), kept=MAX_ROWS)
        rows = rows[:MAX_ROWS]

    section_rows = []
    for rid, title, description in rows:
        row = {"id": rid, "title": truncate(title, MAX_ROW_TITLE)}
        if description:
            row["description"] = truncate(description, MAX_ROW_DESCRIPTION)
        section_rows.append(row)

    interactive: dict[str, Any] = {
        "type": "list",
        "body": {"text": truncate(body, MAX_BODY)},
        "action": {
            "button": truncate(button_label, MAX_LIST_BUTTON),
            "sections": [{"rows": section_rows}],
        },
    }
    _decorate(interactive, header, footer)
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "interactive",
        "interactive": interactive,
    }


def rendered_body(payload: dict[str, Any]) -> str:
    """Human-readable body of a payload, for the message log."""
    if payload.get("type") == "text":
        return payload.get("text", {}).get("body", "")
    interactive = payload.get("interactive", {})
    return interactive.get("body", {}).get("text", "")


def retarget(payload: dict[str, Any], to: str) -> dict[str, Any]:
    """Copy of a stored payload addressed to `to` (used for verbatim resends)."""
    return {**payload, "to": to}
