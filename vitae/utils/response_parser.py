"""
Layered repair and parsing of JSON objects returned by text-generation backends.

Backends frequently return near-JSON: wrapped in markdown code fences, preceded
by prose, with literal newlines inside strings, smart quotes, trailing commas,
doubled quoting, or truncated mid-string. Each repair stage below targets one
of those failure modes and is a plain str -> str function, so stages can be
tested in isolation and new ones appended without disturbing earlier ones.

Stages run in passes. After every pass a parse is attempted and the first
success is returned, so well-formed JSON is never touched by later stages:

    extract:    strip_code_fences, isolate_json_object
    normalize:  normalize_string_characters, remove_trailing_commas
    aggressive: collapse_doubled_quotes, escape_inner_quotes, balance_unterminated

Usage:
    from vitae.utils.response_parser import parse_json_object

    data = parse_json_object('```json\\n{"name": "Ada",}\\n```')
    # {"name": "Ada"}
"""

import json
import re
from typing import Callable, List, Tuple

from loguru import logger

from vitae.utils.exceptions import ParseError

# =============================================================================
# CHARACTER TABLES
# =============================================================================

# Characters that may legally follow a backslash inside a JSON string
_JSON_ESCAPES = frozenset('"\\/bfnrtu')
_HEX4 = re.compile(r"[0-9a-fA-F]{4}")

_SMART_DOUBLE_QUOTES = frozenset("“”„‟")
_SMART_SINGLE_QUOTES = frozenset("‘’‚‛")

# Bullet and dash glyphs folded to ASCII inside string values
_GLYPH_REPLACEMENTS = {
    "•": "-",  # bullet
    "‣": "-",  # triangular bullet
    "⁃": "-",  # hyphen bullet
    "▪": "-",  # small black square
    "●": "-",  # black circle
    "–": "-",  # en dash
    "—": "-",  # em dash
    "−": "-",  # minus sign
}

_OPEN_FENCE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?")
_DOUBLED_WRAPPED_VALUE = re.compile(r'""([^",\s\]}][^"\n]*?)""')

_DECODER = json.JSONDecoder()


# =============================================================================
# EXTRACT STAGES
# =============================================================================


def strip_code_fences(text: str) -> str:
    """
    Remove markdown code-fence markup around the JSON payload.

    A fence counts as markup when it opens the reply or when the fenced body
    starts with '{'. The payload then runs to the last closing fence, so
    backticks inside string values stay intact. An unclosed opening fence
    (truncated reply) is stripped on its own. Fences found elsewhere, such as
    inside a string value of an unfenced object, are left alone.
    """
    for match in _OPEN_FENCE.finditer(text):
        body = text[match.end():]
        if text[: match.start()].strip() and not body.lstrip().startswith("{"):
            continue

        close = body.rfind("```")
        if close == -1:
            return body.strip()
        return body[:close].strip()

    return text.strip()


def isolate_json_object(text: str) -> str:
    """
    Drop any prose before the first '{'.

    Trailing prose is tolerated by the decoder itself (raw_decode stops at the
    end of the first complete value).
    """
    start = text.find("{")
    if start <= 0:
        return text
    return text[start:]


# =============================================================================
# NORMALIZE STAGES
# =============================================================================


def normalize_string_characters(text: str) -> str:
    """
    Escape or fold characters that commonly appear unescaped in string values.

    Inside strings:
    - literal newline / carriage return / tab become \\n, \\r, \\t
    - other control characters become \\u00XX
    - backslashes not starting a valid escape are doubled
    - smart double quotes become \\" (or close the string if it was opened by one)
    - smart single quotes become '
    - bullet glyphs and en/em dashes become '-'

    Outside strings, smart double quotes are treated as ordinary delimiters.
    """
    out = []
    in_string = False
    opened_by_smart = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if not in_string:
            if ch == '"' or ch in _SMART_DOUBLE_QUOTES:
                in_string = True
                opened_by_smart = ch != '"'
                out.append('"')
            else:
                out.append(ch)
            i += 1
            continue

        if ch == "\\":
            nxt = text[i + 1] if i + 1 < n else ""
            if nxt in _JSON_ESCAPES and nxt and (nxt != "u" or _HEX4.match(text, i + 2)):
                out.append(ch + nxt)
                i += 2
                continue
            out.append("\\\\")
            i += 1
            continue

        if ch == '"':
            in_string = False
            out.append(ch)
        elif ch in _SMART_DOUBLE_QUOTES:
            if opened_by_smart:
                in_string = False
                out.append('"')
            else:
                out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        elif ch in _SMART_SINGLE_QUOTES:
            out.append("'")
        else:
            out.append(_GLYPH_REPLACEMENTS.get(ch, ch))
        i += 1

    return "".join(out)


def remove_trailing_commas(text: str) -> str:
    """Remove commas directly followed by a closing brace or bracket (outside strings)."""
    out = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "," and _next_significant(text, i + 1) in ("}", "]"):
            continue
        out.append(ch)

    return "".join(out)


# =============================================================================
# AGGRESSIVE STAGES
# =============================================================================


def collapse_doubled_quotes(text: str) -> str:
    """Collapse values wrapped in doubled quotes: ""Senior Engineer"" -> "Senior Engineer"."""
    return _DOUBLED_WRAPPED_VALUE.sub(r'"\1"', text)


def escape_inner_quotes(text: str) -> str:
    """
    Escape quotes that appear inside a string value.

    A quote inside a string only closes it when the next significant character
    is a structural delimiter (',', '}', ']', ':') or the end of the text;
    otherwise it is an unescaped inner quote and gets a backslash.
    """
    out = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if not in_string:
            if ch == '"':
                in_string = True
            out.append(ch)
            continue

        if escaped:
            escaped = False
            out.append(ch)
        elif ch == "\\":
            escaped = True
            out.append(ch)
        elif ch == '"':
            if _next_significant(text, i + 1) in (",", "}", "]", ":", ""):
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
        else:
            out.append(ch)

    return "".join(out)


def balance_unterminated(text: str) -> str:
    """
    Close a reply that was cut off mid-object.

    Terminates an open string, gives a dangling key or colon a null value,
    drops a dangling comma, then closes every open brace and bracket.
    """
    stack = []
    in_string = False
    escaped = False
    last_structural = ""
    string_follows = ""

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
            string_follows = last_structural
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
            last_structural = ch
        elif ch in "}]":
            if stack and stack[-1] == ch:
                stack.pop()
            last_structural = ch
        elif ch in ",:":
            last_structural = ch

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'

    if not stack:
        return repaired

    repaired = repaired.rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1].rstrip()
    elif repaired.endswith(":"):
        repaired += " null"
    elif repaired.endswith('"') and stack[-1] == "}" and string_follows in ("{", ","):
        # Object key with no value
        repaired += ": null"

    return repaired + "".join(reversed(stack))


# =============================================================================
# PIPELINE
# =============================================================================

Stage = Callable[[str], str]

REPAIR_PASSES: List[Tuple[str, List[Stage]]] = [
    ("extract", [strip_code_fences, isolate_json_object]),
    ("normalize", [normalize_string_characters, remove_trailing_commas]),
    ("aggressive", [collapse_doubled_quotes, escape_inner_quotes, balance_unterminated]),
]


def parse_json_object(raw_text: str) -> dict:
    """
    Parse a JSON object from a backend reply, repairing common malformations.

    Args:
        raw_text: Raw reply text

    Returns:
        Parsed dict

    Raises:
        ParseError: If no pass yields a JSON object. Carries the decoder's
            offset into the last repaired text when available.
    """
    if raw_text is None or not raw_text.strip():
        raise ParseError("empty response")
    if "{" not in raw_text and "“" not in raw_text:
        raise ParseError("no JSON object found in response")

    text = raw_text
    last_error = None

    for pass_name, stages in REPAIR_PASSES:
        for stage in stages:
            text = stage(text)

        try:
            return _decode_object(text)
        except json.JSONDecodeError as e:
            last_error = e
            logger.debug(f"JSON parse failed after '{pass_name}' pass: {e.msg} (offset {e.pos})")

    raise ParseError(last_error.msg, offset=last_error.pos, text=text)


def _decode_object(text: str) -> dict:
    """Decode the first JSON value in text and require it to be an object."""
    result, _end = _DECODER.raw_decode(text.strip())
    if not isinstance(result, dict):
        raise ParseError(f"expected a JSON object, got {type(result).__name__}")
    return result


def _next_significant(text: str, start: int) -> str:
    """Return the next non-whitespace character at or after start ("" at end)."""
    for ch in text[start:]:
        if not ch.isspace():
            return ch
    return ""
