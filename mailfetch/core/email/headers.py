"""Header and address parsing.

Works on raw header text as it arrives from POP3 ``RETR`` or an IMAP
``HEADER.FIELDS`` fetch. Decoding is lenient throughout: anything that
cannot be decoded is returned unchanged rather than raising.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Optional, Tuple

from mailfetch.utils.logging import get_logger

logger = get_logger(__name__)

_HEX_ESCAPE = re.compile(r"=([0-9A-Fa-f]{2})")
ENCODED_WORD = re.compile(
    r"=\?(?P<charset>UTF-8|ISO-8859-1)\?(?P<encoding>[BQ])\?(?P<text>[^?]*)\?=",
    re.IGNORECASE,
)
# Whitespace between two adjacent encoded words is not part of the text
_ADJACENT_WORDS = re.compile(r"(\?=)\s+(=\?)")
_HEADER_LINE = re.compile(r"^([!-9;-~]+):[ \t]*(.*)$")
EMAIL_TOKEN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_ANGLE_ADDRESS = re.compile(r'^\s*(?:"?(?P<name>[^"<]*?)"?\s*)?<(?P<address>[^<>]*)>')
_HEADER_BODY_SEPARATOR = re.compile(r"\r?\n\r?\n")


@dataclass(frozen=True)
class Address:
    """Display name and address pair from a From/To header."""

    name: str
    email: str


def unescape_hex(text: str) -> bytes:
    """Replace every ``=XX`` escape with the byte it names."""
    out = bytearray()
    pos = 0
    for match in _HEX_ESCAPE.finditer(text):
        out += text[pos : match.start()].encode("utf-8")
        out.append(int(match.group(1), 16))
        pos = match.end()
    out += text[pos:].encode("utf-8")
    return bytes(out)


def _decode_word(match: re.Match) -> str:
    charset = match.group("charset").lower()
    encoding = match.group("encoding").upper()
    text = match.group("text")

    try:
        if encoding == "B":
            data = base64.b64decode(text + "=" * (-len(text) % 4), validate=True)
        else:
            # Q-encoding: "_" stands for a space
            data = unescape_hex(text.replace("_", " "))
        return data.decode("utf-8" if charset == "utf-8" else "latin-1")
    except (binascii.Error, UnicodeError, ValueError):
        logger.debug("Leaving undecodable encoded word as-is", extra={"word": match.group(0)})
        return match.group(0)


def decode_encoded_words(value: Optional[str]) -> str:
    """Decode RFC 2047 encoded words anywhere inside a header value.

    Only UTF-8 (B and Q) and ISO-8859-1 (Q) words are recognised; other
    charsets and broken words pass through untouched.

    >>> decode_encoded_words("=?UTF-8?B?SGVsbG8=?=")
    'Hello'
    """
    if not value:
        return ""

    value = _ADJACENT_WORDS.sub(r"\1\2", value)
    return ENCODED_WORD.sub(_decode_word, value)


def parse_address(value: Optional[str]) -> Address:
    """Extract a display name and address from a From/To value.

    Preference order: ``Name <addr>`` (quoted or bare name), then the
    first ``local@domain`` token, then the raw value for both fields.
    """
    if not value:
        return Address(name="", email="")

    value = value.strip()

    match = _ANGLE_ADDRESS.match(value)
    if match and match.group("address").strip():
        address = match.group("address").strip()
        name = (match.group("name") or "").strip()
        return Address(name=name or address, email=address)

    token = EMAIL_TOKEN.search(value)
    if token:
        return Address(name=token.group(0), email=token.group(0))

    return Address(name=value, email=value)


def split_message(raw: str) -> Tuple[str, str]:
    """Split a raw message into its header block and body at the first blank line."""
    if not raw:
        return "", ""

    match = _HEADER_BODY_SEPARATOR.search(raw)
    if match is None:
        return raw, ""
    return raw[: match.start()], raw[match.end() :]


def unfold_headers(block: str) -> Dict[str, str]:
    """Parse a header block into a ``{lowercase-name: value}`` mapping.

    Continuation lines (leading space or tab) are appended to the previous
    header's value with a single joining space. When a header repeats, the
    first occurrence wins.
    """
    headers: Dict[str, str] = {}
    current_name: Optional[str] = None
    current_value = ""

    def _commit() -> None:
        if current_name is not None and current_name not in headers:
            headers[current_name] = current_value.strip()

    for line in re.split(r"\r?\n", block or ""):
        if line[:1] in (" ", "\t"):
            if current_name is not None:
                current_value += " " + line.strip()
            continue

        match = _HEADER_LINE.match(line)
        if match:
            _commit()
            current_name = match.group(1).lower()
            current_value = match.group(2)

    _commit()
    return headers


def get_header(block: str, name: str) -> Optional[str]:
    """Return one header's unfolded value from a raw header block, or None."""
    return unfold_headers(block).get(name.lower())


def parse_date(value: Optional[str]) -> str:
    """Convert an RFC 2822 date to ISO-8601, or now (UTC) when unparseable."""
    if value:
        try:
            parsed = parsedate_to_datetime(value.strip())
        except (TypeError, ValueError, IndexError):
            parsed = None

        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc).isoformat()

        logger.debug("Unparseable Date header, using current time", extra={"date": value})

    return datetime.now(timezone.utc).isoformat()
