"""
Message formatting and escaping utilities for owner and admin notifications

Provides consistent HTML formatting and escaping for Telegram messages
to prevent parsing errors.
"""

import html
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def escape_html(text: str) -> str:
    """
    Escape HTML special characters for safe display in Telegram HTML mode.

    Args:
        text: Raw text to escape

    Returns:
        HTML-escaped text safe for Telegram
    """
    if not text:
        return ""
    return html.escape(str(text))


def format_inline_code(text: str) -> str:
    """Format text as inline code in HTML."""
    if not text:
        return "<code></code>"
    return f"<code>{escape_html(text)}</code>"


def format_bold(text: str) -> str:
    """Format text as bold in HTML."""
    if not text:
        return ""
    return f"<b>{escape_html(text)}</b>"


def truncate_with_ellipsis(text: str, max_length: int = 50) -> str:
    """
    Truncate text with ellipsis if too long.

    Args:
        text: Text to truncate
        max_length: Maximum length including the ellipsis
    """
    if not text or len(text) <= max_length:
        return text or ""
    return text[:max_length - 3] + "..."


def create_success_message(title: str, details: Optional[str] = None) -> str:
    """Create a standardized success message."""
    message = f"✅ {format_bold(title)}"
    if details:
        message += f"\n\n{details}"
    return message


def create_error_message(title: str, details: Optional[str] = None) -> str:
    """Create a standardized error message."""
    message = f"❌ {format_bold(title)}"
    if details:
        message += f"\n\n{details}"
    return message

