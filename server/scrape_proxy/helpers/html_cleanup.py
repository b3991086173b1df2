import html
import re
from typing import Optional

TEXT_MODE_MAX_CHARS = 50000
HTML_MODE_MAX_CHARS = 30000

_SCRIPT_STYLE_PATTERN = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_SVG_PATTERN = re.compile(r"<svg\b[^>]*>.*?</svg\s*>", re.IGNORECASE | re.DOTALL)
_COMMENT_PATTERN = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_PATTERN = re.compile(r"<[^>]+>")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def _normalize_whitespace(text: str) -> str:
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def extract_title(page_html: str) -> Optional[str]:
    match = re.search(r"<title[^>]*>(.*?)</title>", page_html, flags=re.IGNORECASE | re.DOTALL)
    if not match:
        return None
    title = _normalize_whitespace(html.unescape(match.group(1)))
    return title[:512] or None


def html_to_text(page_html: str, max_chars: int = TEXT_MODE_MAX_CHARS) -> tuple[str, bool]:
    """
    Reduce a page to readable text.

    Returns the text and whether it was cut at ``max_chars``.
    """
    text = _SCRIPT_STYLE_PATTERN.sub(" ", page_html)
    text = _COMMENT_PATTERN.sub(" ", text)
    text = _TAG_PATTERN.sub("\n", text)
    text = _normalize_whitespace(html.unescape(text))
    return text[:max_chars], len(text) > max_chars


def compact_html(page_html: str, max_chars: int = HTML_MODE_MAX_CHARS) -> tuple[str, bool]:
    """Strip scripts, styles, comments and inline SVG, keeping the markup."""
    compacted = _SCRIPT_STYLE_PATTERN.sub("", page_html)
    compacted = _COMMENT_PATTERN.sub("", compacted)
    compacted = _SVG_PATTERN.sub("", compacted)
    compacted = _normalize_whitespace(compacted)
    return compacted[:max_chars], len(compacted) > max_chars
