"""Input normalization helpers for addresses, names and message text."""

import html
import re
from typing import Optional

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    return email.strip().lower() or None


def normalize_name(name: Optional[str]) -> Optional[str]:
    """
    Normalize name by stripping whitespace and collapsing multiple spaces.

    Args:
        name: Raw name input

    Returns:
        Cleaned name or None if empty
    """
    if not name:
        return None
    cleaned = " ".join(name.split())
    return cleaned or None


def email_local_part(email: str) -> str:
    """Part of the address before ``@``."""
    return email.split("@", 1)[0]


def html_to_text(body_html: Optional[str]) -> str:
    """Crude plain-text rendition of an HTML body, entities decoded."""
    if not body_html:
        return ""
    text = _SCRIPT_STYLE_RE.sub("", body_html)
    text = _TAG_RE.sub(" ", text)
    return html.unescape(" ".join(text.split()))
