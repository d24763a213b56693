"""
Text preparation for extracted résumé text before it is sent to an LLM.

Typical pipeline (prepare_for_llm):
1. clean_extracted_text: normalize line breaks and whitespace, fold bullet glyphs,
   drop format, control and pictographic characters (any script's letters are kept)
2. remove_common_headers: drop page counters, "Resume"/"CV" titles, etc.
3. limit_text_length: cap length, cutting at a sentence or line boundary
"""

import re
import unicodedata

from loguru import logger

DEFAULT_MAX_CHARS = 25000
TRUNCATION_MARKER = "\n\n[Content truncated due to length]"

_BULLET_GLYPHS = re.compile(r"[•▪▫‣⁃●◦]\s*")
_ARROW_GLYPHS = re.compile(r"[→←↑↓]")
# Unicode categories outside the text itself: format characters (zero-width,
# soft hyphen) are deleted; controls, private-use, unassigned and pictographic
# symbols (emoji, dingbats, box drawing) become a space. Letters, marks, digits
# and punctuation of every script are kept.
_REMOVED_CATEGORIES = frozenset({"Cf"})
_REPLACED_CATEGORIES = frozenset({"Cc", "Co", "Cn", "Cs", "So"})
_HORIZONTAL_WS = re.compile(r"[ \t ]+")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")

COMMON_HEADER_PATTERNS = [
    re.compile(r"^(page \d+ of \d+|page \d+)$", re.IGNORECASE),
    re.compile(r"^(curriculum vitae|resume|résumé|cv)$", re.IGNORECASE),
    re.compile(r"^(personal information|contact information)$", re.IGNORECASE),
    re.compile(r"^(confidential|private)$", re.IGNORECASE),
]


def clean_extracted_text(text: str) -> str:
    """
    Normalize whitespace and strip characters that confuse LLMs.

    Line structure is kept (runs of 3+ newlines collapse to a blank line) so
    that header removal can still operate per line.

    Args:
        text: Raw extracted text (non-str or empty input returns "")

    Returns:
        Cleaned text
    """
    if not text or not isinstance(text, str):
        return ""

    cleaned = text.replace("\r\n", "\n").replace("\r", "\n").replace("\f", "\n")
    cleaned = _BULLET_GLYPHS.sub("- ", cleaned)
    cleaned = _ARROW_GLYPHS.sub(" ", cleaned)
    cleaned = strip_unsupported_characters(cleaned)

    lines = [_HORIZONTAL_WS.sub(" ", line).strip() for line in cleaned.split("\n")]
    cleaned = _EXCESS_BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()

    logger.debug(f"Text cleaned: {len(text)} -> {len(cleaned)} characters")
    return cleaned


def strip_unsupported_characters(text: str) -> str:
    """Delete format characters and replace controls and pictographs with spaces (newlines and tabs kept)."""
    out = []
    for ch in text:
        if ch in "\n\t":
            out.append(ch)
            continue
        category = unicodedata.category(ch)
        if category in _REMOVED_CATEGORIES:
            continue
        out.append(" " if category in _REPLACED_CATEGORIES else ch)
    return "".join(out)


def remove_common_headers(text: str) -> str:
    """Drop lines that are only a page counter or document title, then trim surrounding blank lines."""
    kept = [
        line
        for line in text.split("\n")
        if not any(pattern.match(line.strip()) for pattern in COMMON_HEADER_PATTERNS)
    ]
    return "\n".join(kept).strip("\n")


def limit_text_length(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Cap text length, preferring to cut at a sentence or line boundary.

    A boundary is used only when it falls in the last 20% of the allowed
    length; otherwise the text is cut hard at max_chars. Truncated text ends
    with TRUNCATION_MARKER.
    """
    if not text or len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    cut_point = max(truncated.rfind("."), truncated.rfind("\n"))
    if cut_point > max_chars * 0.8:
        truncated = truncated[: cut_point + 1]

    logger.debug(f"Text truncated from {len(text)} to {len(truncated)} characters")
    return truncated + TRUNCATION_MARKER


def prepare_for_llm(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Run the full cleaning pipeline: clean, drop headers, cap length."""
    prepared = clean_extracted_text(text)
    prepared = remove_common_headers(prepared)
    return limit_text_length(prepared, max_chars=max_chars)
