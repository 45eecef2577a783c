"""Convert HTML email bodies to plain text."""

import html
import re

_DROP_BLOCKS = re.compile(
    r"<(style|script|head|noscript)\b[^>]*>.*?</\1\b[^>]*>",
    re.IGNORECASE | re.DOTALL,
)
_COMMENTS = re.compile(r"<!--.*?-->", re.DOTALL)
_PARAGRAPH_END = re.compile(r"</p\s*>", re.IGNORECASE)
_BLOCK_TAGS = re.compile(
    r"</?(p|div|br|hr|tr|li|h[1-6]|blockquote|pre)\b[^>]*/?>",
    re.IGNORECASE,
)
_ANY_TAG = re.compile(r"<[^>]+>")


def html_to_text(markup: str) -> str:
    """
    Strip tags and decode entities, keeping line breaks for block elements.

    Scripts, styles, the head section and comments are removed with their
    contents.
    """
    if not markup:
        return ""

    text = _COMMENTS.sub("", markup)
    text = _DROP_BLOCKS.sub("", text)
    text = _PARAGRAPH_END.sub("\n\n", text)
    text = _BLOCK_TAGS.sub("\n", text)
    text = _ANY_TAG.sub(" ", text)
    text = html.unescape(text).replace("\xa0", " ")

    # Normalize whitespace
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n\s*\n", "\n\n", text)
    text = re.sub(r"^[ \t]+|[ \t]+$", "", text, flags=re.MULTILINE)
    return text.strip()
