from .constants import Pop3State
from .session import Pop3Session

__all__ = ["Pop3Session", "Pop3State"]
