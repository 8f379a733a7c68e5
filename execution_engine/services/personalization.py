from __future__ import annotations

import html
import re
from typing import Any, Mapping

_TOKEN_RE = re.compile(r"\{\{([^{}]*)\}\}")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first(*values: Any) -> str:
    for value in values:
        text = _text(value)
        if text:
            return text
    return ""


def personalization_fields(recipient: Mapping[str, Any]) -> dict[str, str]:
    custom = recipient.get("custom_fields") or {}
    name = _text(recipient.get("name"))
    name_parts = name.split(" ") if name else []
    first_name = _text(recipient.get("first_name")) or (name_parts[0] if name_parts else "")
    last_name = _text(recipient.get("last_name")) or " ".join(name_parts[1:])
    full_name = name or f"{first_name} {last_name}".strip()
    return {
        "first_name": first_name or "there",
        "last_name": last_name,
        "full_name": full_name or "there",
        "company": _text(recipient.get("company")) or "your company",
        "email": _text(recipient.get("email")),
        "location": _first(
            recipient.get("location"), recipient.get("city"), recipient.get("address"), custom.get("location")
        ),
        "industry": _first(recipient.get("industry"), recipient.get("vertical"), custom.get("industry")),
        "title": _first(recipient.get("title"), recipient.get("job_title"), custom.get("title")),
        "phone": _text(recipient.get("phone")),
    }


def personalize(content: str, recipient: Mapping[str, Any], *, escape_html: bool = False) -> str:
    """
    Replace ``{{token}}`` placeholders (case-insensitive) with recipient data.

    Unrecognized tokens are replaced with an empty string so no literal
    placeholder is ever delivered.
    """
    if not content:
        return content
    fields = personalization_fields(recipient)

    def _replace(match: re.Match[str]) -> str:
        value = fields.get(match.group(1).strip().lower(), "")
        return html.escape(value) if escape_html else value

    return _TOKEN_RE.sub(_replace, content)
