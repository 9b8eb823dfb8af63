"""IMAP constants and configuration values."""


class IMAPResponse:
    """Standard IMAP response codes."""

    OK = "OK"
    NO = "NO"
    BAD = "BAD"


# Header fields requested per message; the body is fetched separately as TEXT
HEADER_FIELDS = ("FROM", "TO", "SUBJECT", "DATE", "MESSAGE-ID")

FETCH_ITEMS = (
    f"(BODY.PEEK[HEADER.FIELDS ({' '.join(HEADER_FIELDS)})] BODY.PEEK[TEXT])"
)

LOGOUT_TIMEOUT = 5.0  # Best-effort LOGOUT on close
