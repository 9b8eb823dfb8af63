"""MIME body decoding into display-ready plain text."""

import re
from typing import Dict, Optional, Tuple

from fast_mail_parser import ParseError, parse_email

from mailfetch.core.models.message import MimePart
from mailfetch.utils.errors import DecodeError
from mailfetch.utils.logging import get_logger

from .constants import Limits
from .headers import split_message, unfold_headers

logger = get_logger(__name__)

DEFAULT_CHARSET = "utf-8"

_PARAM = re.compile(r';\s*([\w.-]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;\s]+)')
_SNIFFED_BOUNDARY = re.compile(r"^--(\S+)[ \t]*\r?\n(?=[^\r\n]*:)", re.MULTILINE)

_STYLE_BLOCK = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_SCRIPT_BLOCK = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_ENTITY = re.compile(r"&(nbsp|amp|lt|gt|quot);")
_ENTITIES = {"nbsp": " ", "amp": "&", "lt": "<", "gt": ">", "quot": '"'}
_WHITESPACE = re.compile(r"\s+")

_FALLBACK_HEADER_LINE = re.compile(
    r"^(?:Content-Type|Content-Transfer-Encoding|Content-Disposition):[^\n]*\n",
    re.IGNORECASE | re.MULTILINE,
)
_BOUNDARY_MARKER_LINE = re.compile(r"^--[\w'()+,./:=?-]+[ \t]*$\n?", re.MULTILINE)
_BLANK_RUN = re.compile(r"\n[ \t]*(?:\n[ \t]*)+")


def parse_content_type(value: Optional[str]) -> Tuple[str, Dict[str, str]]:
    """Split a Content-Type value into its lowercase media type and parameters."""
    if not value:
        return "", {}

    media_type = value.split(";", 1)[0].strip().lower()
    params: Dict[str, str] = {}
    for name, raw in _PARAM.findall(value):
        if raw.startswith('"') and raw.endswith('"'):
            raw = raw[1:-1].replace('\\"', '"')
        params[name.lower()] = raw.strip()
    return media_type, params


def strip_html(html: str) -> str:
    """Reduce HTML to collapsed plain text."""
    text = _STYLE_BLOCK.sub("", html)
    text = _SCRIPT_BLOCK.sub("", text)
    text = _TAG.sub(" ", text)
    text = _ENTITY.sub(lambda m: _ENTITIES[m.group(1)], text)
    return _WHITESPACE.sub(" ", text).strip()


def sniff_boundary(body: str) -> Optional[str]:
    """Find a multipart boundary from the first ``--token`` line followed by a header."""
    match = _SNIFFED_BOUNDARY.search(body or "")
    if match is None:
        return None
    boundary = match.group(1)
    if boundary.endswith("--"):
        return None
    return boundary


class MimeDecoder:
    """Turn a raw header+body block into a best-effort plain-text string.

    Part walking and transfer/charset decoding are done by
    ``fast_mail_parser``. Plain text is preferred; HTML is stripped to text
    when no plain part exists; anything else falls back to a cleaned-up
    copy of the source. Decoding never raises.

    Example:
        >>> MimeDecoder().decode("Content-Type: text/plain\\r\\n\\r\\nHi\\r\\n")
        'Hi'
    """

    def __init__(self, max_chars: int = Limits.BODY_MAX_CHARS):
        self.max_chars = max_chars

    def decode(self, raw: str) -> str:
        """Decode a complete message (top-level headers followed by body)."""
        header_block, body = split_message(raw or "")
        return self.decode_body(unfold_headers(header_block), body)

    def decode_body(self, headers: Dict[str, str], body: str) -> str:
        """Decode a body given the already-parsed top-level headers."""
        body = body or ""
        part = self.describe(headers, body)

        text = None
        if part.boundary or not part.is_multipart:
            try:
                text = self._select(self._parse(part))
            except DecodeError as e:
                logger.warning(
                    "Unparseable MIME content, using fallback extraction",
                    extra={"content_type": part.content_type, "error": str(e)},
                )

        if text is None:
            logger.debug(
                "No text part found, using fallback extraction",
                extra={"content_type": part.content_type},
            )
            text = self._fallback(body)

        return text.strip()[: self.max_chars]

    @staticmethod
    def describe(headers: Dict[str, str], body: str) -> MimePart:
        """Describe the top-level part of a message.

        When the headers carry no Content-Type at all (an IMAP fetch that
        only asked for address and subject fields), a multipart boundary is
        sniffed from the body itself.
        """
        value = headers.get("content-type", "")
        media_type, params = parse_content_type(value)

        if not value:
            boundary = sniff_boundary(body)
            if boundary:
                media_type, params = "multipart/mixed", {"boundary": boundary}

        return MimePart(
            content_type=media_type or "text/plain",
            charset=params.get("charset", DEFAULT_CHARSET),
            transfer_encoding=headers.get("content-transfer-encoding", "7bit")
            .strip()
            .lower(),
            raw=body,
            boundary=params.get("boundary"),
        )

    @staticmethod
    def render(part: MimePart) -> bytes:
        """Rebuild a minimal message around the part for the parser."""
        if part.boundary:
            content_type = f'{part.content_type}; boundary="{part.boundary}"'
        else:
            content_type = f"{part.content_type}; charset={part.charset}"

        message = (
            "MIME-Version: 1.0\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Transfer-Encoding: {part.transfer_encoding}\r\n"
            "\r\n"
            f"{part.raw}"
        )
        return message.encode("utf-8")

    def _parse(self, part: MimePart):
        """
        Raises:
            DecodeError: If the parser rejects the content
        """
        try:
            return parse_email(self.render(part))
        except ParseError as e:
            raise DecodeError(
                f"Failed to parse {part.content_type} content",
                details={"charset": part.charset},
            ) from e

    @staticmethod
    def _select(parsed) -> Optional[str]:
        """First non-empty text/plain part, else the first text/html part as text."""
        for text in parsed.text_plain or []:
            if text and text.strip():
                return text

        for html in parsed.text_html or []:
            if html and html.strip():
                return strip_html(html)

        return None

    @staticmethod
    def _fallback(body: str) -> str:
        """Strip MIME scaffolding and return whatever readable text remains."""
        text = body.replace("\r\n", "\n")
        text = _FALLBACK_HEADER_LINE.sub("", text)
        text = _BOUNDARY_MARKER_LINE.sub("", text)
        text = _BLANK_RUN.sub("\n", text)
        return text.strip()
