from .frames import Frame
from .profile import LockInProfile
from .results import LockInProgress, LockInResult

__all__ = [
    "Frame",
    "LockInProfile",
    "LockInProgress",
    "LockInResult",
]
