"""Protocol transcript returned to callers for diagnostics."""

from typing import List

from .constants import Limits

# Commands whose arguments carry credentials
SECRET_COMMANDS = ("PASS", "LOGIN")


class Transcript:
    """Ordered record of the lines exchanged with the server.

    Credential arguments never enter the transcript and received lines are
    clipped, so the rendered text is safe to hand back to users.
    """

    SENT = ">>> "
    RECEIVED = "<<< "
    NOTE = "--- "

    def __init__(self, max_line: int = Limits.TRANSCRIPT_LINE_CHARS):
        self.max_line = max_line
        self.lines: List[str] = []

    def sent(self, line: str) -> None:
        command = line.split(" ", 1)[0].upper()
        if command in SECRET_COMMANDS and " " in line:
            line = f"{command} ****"
        self.lines.append(self.SENT + line)

    def received(self, line: str) -> None:
        if len(line) > self.max_line:
            line = line[: self.max_line] + "..."
        self.lines.append(self.RECEIVED + line)

    def note(self, text: str) -> None:
        self.lines.append(self.NOTE + text)

    def render(self) -> str:
        return "\n".join(self.lines)
