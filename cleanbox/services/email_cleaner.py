"""
Helpers for cleaning and truncating email content before it goes to the LLM.

Promotional HTML is mostly markup; stripping it keeps the prompt well under
the assistant's token limits.
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass

BODY_MAX_LENGTH = 8000
SUBJECT_MAX_LENGTH = 500
SNIPPET_MAX_LENGTH = 1000

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class CleanedEmail:
    subject: str
    snippet: str
    body: str

    @property
    def text_to_scan(self) -> str:
        """Body if there is one, otherwise the snippet."""
        return self.body or self.snippet or ""


def strip_html(text: str) -> str:
    """Strip tags, scripts, styles and comments, decode entities, collapse whitespace."""
    if not text:
        return ""
    text = _SCRIPT_RE.sub("", text)
    text = _STYLE_RE.sub("", text)
    text = _COMMENT_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    # html.unescape turns &nbsp; into \xa0, which \s matches
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def truncate_text(text: str, max_length: int = BODY_MAX_LENGTH) -> str:
    """Cut text to max_length, preferring a word boundary in the last 20%."""
    if not text or len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        return truncated[:last_space] + "..."
    return truncated + "..."


def clean_email_for_ai(subject: str, snippet: str, body: str) -> CleanedEmail:
    """Clean and bound every part of an email that goes into a prompt."""
    return CleanedEmail(
        subject=strip_html(subject or "")[:SUBJECT_MAX_LENGTH],
        snippet=strip_html(snippet or "")[:SNIPPET_MAX_LENGTH],
        body=truncate_text(strip_html(body or ""), BODY_MAX_LENGTH),
    )
