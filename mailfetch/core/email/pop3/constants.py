"""POP3 constants and the session state machine table."""

from enum import Enum


class Pop3Response:
    """POP3 status indicators."""

    OK = "+OK"
    ERR = "-ERR"
    TERMINATOR = "."


class Pop3Command:
    """Commands issued by the session, in the order they are used."""

    STLS = "STLS"
    USER = "USER"
    PASS = "PASS"
    LIST = "LIST"
    RETR = "RETR"
    QUIT = "QUIT"


class Pop3State(str, Enum):
    """Position of a session in the POP3 conversation."""

    GREETING = "greeting"
    STLS = "stls"
    USER = "user"
    PASS = "pass"
    LIST = "list"
    RETR = "retr"
    QUIT = "quit"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Pop3State.SUCCESS, Pop3State.ERROR)


# Allowed moves; a session never goes back to an earlier state.
# PASS -> QUIT is the connectivity-test path, LIST -> QUIT an empty mailbox.
TRANSITIONS = {
    Pop3State.GREETING: {Pop3State.STLS, Pop3State.USER, Pop3State.ERROR},
    Pop3State.STLS: {Pop3State.USER, Pop3State.ERROR},
    Pop3State.USER: {Pop3State.PASS, Pop3State.ERROR},
    Pop3State.PASS: {Pop3State.LIST, Pop3State.QUIT, Pop3State.ERROR},
    Pop3State.LIST: {Pop3State.RETR, Pop3State.QUIT, Pop3State.ERROR},
    Pop3State.RETR: {Pop3State.RETR, Pop3State.QUIT, Pop3State.ERROR},
    Pop3State.QUIT: {Pop3State.SUCCESS, Pop3State.ERROR},
    Pop3State.SUCCESS: set(),
    Pop3State.ERROR: set(),
}
