"""IMAP protocol operations - folder selection and windowed fetch."""

import re
from typing import Dict, Optional, Tuple

import aioimaplib

from mailfetch.utils.errors import IMAPError
from mailfetch.utils.logging import async_log_call, get_logger

from ..constants import Limits
from .connection import IMAPConnection
from .constants import FETCH_ITEMS

logger = get_logger(__name__)

_EXISTS = re.compile(r"(\d+)\s+EXISTS", re.IGNORECASE)
_FETCH_START = re.compile(r"^(\d+)\s+FETCH\s*\(", re.IGNORECASE)
_LITERAL_MARKER = re.compile(
    r"BODY\[(?P<section>HEADER\.FIELDS[^\]]*|TEXT)\]\s*\{\d+\}\s*$", re.IGNORECASE
)


def _as_text(item) -> str:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item).decode("utf-8", errors="replace")
    return str(item)


class IMAPProtocol:
    """IMAP operations needed to read the newest messages of one folder."""

    def __init__(self, connection: IMAPConnection):
        """Initialise IMAP protocol handler.

        Args:
            connection: Connected IMAPConnection
        """
        self.connection = connection

    async def select_folder(self, folder: str) -> int:
        """Select a folder and return how many messages it holds.

        Raises:
            IMAPError: If folder selection fails
        """
        client = self.connection.client
        transcript = self.connection.transcript
        transcript.sent(f"SELECT {folder}")

        try:
            response = await client.select(folder)
        except aioimaplib.AioImapException as e:
            raise IMAPError(
                f"IMAP error selecting folder {folder}: {str(e)}",
                details={"folder": folder},
            ) from e

        transcript.received(response.result)
        if response.result != "OK":
            raise IMAPError(
                f"Failed to select folder: {folder}",
                details={"folder": folder, "response": response.result},
            )

        total = 0
        for line in response.lines:
            match = _EXISTS.search(_as_text(line))
            if match:
                total = int(match.group(1))

        transcript.note(f"{folder} holds {total} messages")
        logger.debug(f"Selected IMAP folder: {folder}", extra={"exists": total})
        return total

    @async_log_call
    async def fetch_window(
        self, total: int, limit: int = Limits.IMAP_FETCH_LIMIT
    ) -> Dict[int, Tuple[str, str]]:
        """Fetch header fields and body text of the newest ``limit`` messages.

        Args:
            total: Message count of the selected folder
            limit: How many of the most recent messages to fetch

        Returns:
            Dictionary mapping sequence number -> (header block, body text)

        Raises:
            IMAPError: If the FETCH command fails
        """
        if total <= 0:
            return {}

        start = max(1, total - limit + 1)
        message_set = f"{start}:{total}"
        client = self.connection.client
        transcript = self.connection.transcript
        transcript.sent(f"FETCH {message_set} {FETCH_ITEMS}")

        try:
            response = await client.fetch(message_set, FETCH_ITEMS)
        except aioimaplib.AioImapException as e:
            raise IMAPError(
                f"IMAP fetch error: {str(e)}", details={"range": message_set}
            ) from e

        transcript.received(response.result)
        if response.result != "OK":
            raise IMAPError(
                f"FETCH failed for range: {message_set}",
                details={"range": message_set, "response": response.result},
            )

        messages = self.parse_fetch_response(response.lines)
        transcript.note(f"Received {len(messages)} messages")

        logger.debug(
            "Fetched messages",
            extra={"range": message_set, "received": len(messages)},
        )
        return messages

    @staticmethod
    def parse_fetch_response(lines) -> Dict[int, Tuple[str, str]]:
        """Group FETCH response lines into per-message header and body text.

        aioimaplib returns each ``{N}`` literal as a separate item right
        after the line that announces it.
        """
        sections: Dict[int, Dict[str, str]] = {}
        sequence: Optional[int] = None
        pending: Optional[str] = None

        for item in lines:
            if pending is not None and sequence is not None:
                sections[sequence][pending] = _as_text(item)
                pending = None
                continue

            text = _as_text(item)
            match = _FETCH_START.match(text)
            if match:
                sequence = int(match.group(1))
                sections.setdefault(sequence, {})

            marker = _LITERAL_MARKER.search(text)
            if marker and sequence is not None:
                section = marker.group("section").upper()
                pending = "header" if section.startswith("HEADER") else "text"

        return {
            seq: (parts.get("header", ""), parts.get("text", ""))
            for seq, parts in sections.items()
        }
