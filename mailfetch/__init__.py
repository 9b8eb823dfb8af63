"""Retrieve recent messages from a POP3 or IMAP mailbox as plain text."""

__version__ = "0.1.0"
