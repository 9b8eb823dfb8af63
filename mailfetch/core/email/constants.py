"""Shared constants for mailbox retrieval.

Centralised configuration for:
- Timeout settings
- Fetch windows and output limits
- Default ports per protocol and encryption mode

These are the defaults for ``mailfetch.utils.config.FetchConfig``; a
config file can override any of them without touching the code.

Performance Tuning:
-------------------
- Increase FETCH for slow servers or large mailboxes
- Decrease SOCKET_IDLE to fail faster on half-open connections
- Raise POP3_FETCH_LIMIT / IMAP_FETCH_LIMIT to retrieve more history
"""


class Timeouts:
    """Timeout settings for retrieval operations (in seconds)."""

    FETCH = 25.0  # Whole fetch session, any protocol
    CONNECTION_TEST = 15.0  # Connectivity-only test session
    SOCKET_IDLE = 20.0  # Longest wait for a single response line
    QUIT = 0.5  # Grace period for the QUIT reply


class Limits:
    """Output and window sizes."""

    POP3_FETCH_LIMIT = 10  # Most recent POP3 messages retrieved
    IMAP_FETCH_LIMIT = 20  # Most recent IMAP messages retrieved
    BODY_MAX_CHARS = 5000  # Decoded body cap
    TRANSCRIPT_LINE_CHARS = 300  # Received lines are clipped in the transcript


class DefaultPorts:
    """Default server ports when none is supplied."""

    POP3 = 110
    POP3_SSL = 995
    IMAP = 143
    IMAP_SSL = 993
