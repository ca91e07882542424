"""
PayVAT - Text Sanitization

Chat messages are stored as plain text. All markup is removed before a
message is persisted.
"""

import html
import re

# Elements whose content is never user-visible text
_BLOCK_PATTERN = re.compile(
    r"<\s*(script|style|iframe|object|embed|noscript)\b[^>]*>.*?<\s*/\s*\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_COMMENT_PATTERN = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_PATTERN = re.compile(r"</?[a-zA-Z!][^>]*>?")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_markup(text: str) -> str:
    """
    Remove all tags and attributes from text.

    Script/style blocks are dropped with their content. Entities are decoded
    after stripping and the result is stripped a second time, so encoded
    markup such as ``&lt;script&gt;`` cannot survive as a tag.
    """
    if not text:
        return ""

    cleaned = _COMMENT_PATTERN.sub("", text)
    cleaned = _BLOCK_PATTERN.sub("", cleaned)
    cleaned = _TAG_PATTERN.sub("", cleaned)
    cleaned = html.unescape(cleaned)
    cleaned = _BLOCK_PATTERN.sub("", cleaned)
    cleaned = _TAG_PATTERN.sub("", cleaned)
    cleaned = _CONTROL_CHARS.sub("", cleaned)

    return cleaned.strip()
