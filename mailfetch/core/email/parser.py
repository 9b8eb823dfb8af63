"""Raw message parsing into display-ready records."""

from typing import Dict, Optional

from mailfetch.core.models.message import MessageRecord, Placeholders, generate_message_id

from .constants import Limits
from .headers import (
    decode_encoded_words,
    parse_address,
    parse_date,
    split_message,
    unfold_headers,
)
from .mime import MimeDecoder


class EmailParser:
    """Parse retrieved messages into ``MessageRecord`` objects.

    POP3 hands over a complete header+body block per message; IMAP hands
    over the requested header fields and the body text separately. Both
    paths share the same header handling and MIME decoding, and neither
    raises on malformed content.
    """

    @staticmethod
    def from_raw(raw: str, max_chars: int = Limits.BODY_MAX_CHARS) -> MessageRecord:
        """Parse a complete message as returned by POP3 ``RETR``."""
        header_block, body = split_message(raw)
        return EmailParser.from_parts(header_block, body, max_chars=max_chars)

    @staticmethod
    def from_parts(
        header_block: str,
        body: str,
        max_chars: int = Limits.BODY_MAX_CHARS,
        use_message_id: bool = False,
    ) -> MessageRecord:
        """Parse a header block and body text fetched separately.

        Args:
            header_block: Raw header lines (folded or not)
            body: Raw body text, possibly MIME encoded
            max_chars: Cap on the decoded body length
            use_message_id: Use the Message-ID header as the record id

        Returns:
            A populated ``MessageRecord``
        """
        headers = unfold_headers(header_block)
        text = MimeDecoder(max_chars=max_chars).decode_body(headers, body)
        return EmailParser._to_record(headers, text, use_message_id)

    @staticmethod
    def _to_record(
        headers: Dict[str, str], body: str, use_message_id: bool
    ) -> MessageRecord:
        sender = parse_address(decode_encoded_words(headers.get("from")))
        subject = decode_encoded_words(headers.get("subject")).strip()

        to_value = headers.get("to")
        to_email: Optional[str] = None
        if to_value:
            to_email = parse_address(decode_encoded_words(to_value)).email or None

        record_id = None
        if use_message_id:
            record_id = headers.get("message-id", "").strip().strip("<>") or None

        return MessageRecord(
            id=record_id or generate_message_id(),
            sender=sender.name or sender.email or Placeholders.UNKNOWN_SENDER,
            from_email=sender.email,
            subject=subject or Placeholders.NO_SUBJECT,
            date=parse_date(headers.get("date")),
            body=body or Placeholders.NO_CONTENT,
            to_email=to_email,
        )
