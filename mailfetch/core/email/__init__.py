"""Mail retrieval over POP3 and IMAP, and message decoding.

This package provides:
- POP3: a session state machine with in-session STARTTLS
- IMAP: a windowed fetch over aioimaplib
- Parser: header, address and MIME decoding into plain-text records

Usage Examples
----------------

Fetch through the service (protocol picked from the request):
    >>> from mailfetch.core.email.services.fetch import MailFetchService
    >>> from mailfetch.core.models import FetchRequest
    >>>
    >>> request = FetchRequest(pop={"host": "pop.example.com",
    ...                             "username": "alice", "password": "secret"})
    >>> result = await MailFetchService().fetch(request)
    >>> print(result.message)

Drive a POP3 session directly:
    >>> from mailfetch.core.email.pop3 import Pop3Session
    >>>
    >>> result = await Pop3Session(credentials).fetch()
    >>> print(result.debug)

Parse a raw message:
    >>> from mailfetch.core.email.parser import EmailParser
    >>>
    >>> record = EmailParser.from_raw(raw_text)
    >>> print(record.subject, record.body)

Notes
-----
- Network operations are asynchronous and require 'await'
- Decoding never raises; undecodable content degrades to less text
- Session, IMAP and service classes live in their own subpackages
"""

from .headers import Address, decode_encoded_words, parse_address
from .mime import MimeDecoder
from .parser import EmailParser

__all__ = [
    "Address",
    "EmailParser",
    "MimeDecoder",
    "decode_encoded_words",
    "parse_address",
]
