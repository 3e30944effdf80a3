import logging
from abc import ABC, abstractmethod

import click

READ = "read"
READWRITE = "readwrite"
MODES = (READ, READWRITE)

GRANTED = "granted"
PROMPT = "prompt"
DENIED = "denied"

logger = logging.getLogger(__name__)


def _check_mode(mode):
    if mode not in MODES:
        raise ValueError(f"Unknown permission mode: {mode!r}. Use 'read' or 'readwrite'.")


def confirm_access(handle, mode):
    """Default interactive prompt: ask on the terminal."""
    verb = "read and write" if mode == READWRITE else "read"
    return click.confirm(f"Allow hjx to {verb} {handle.label}?", default=True)


class StorageHandle(ABC):
    """A revocable capability referencing an external storage location.

    The handle carries no state data, only where the location is and which
    mode the user granted. Permission is never cached beyond that grant:
    query_permission() re-checks the backend on every call, because access can
    disappear out-of-band at any time.

    Implementations: DirectoryHandle, S3Handle.
    """

    kind = None

    def __init__(self, granted=None):
        if granted is not None:
            _check_mode(granted)
        self.granted = granted

    # ------------------------------------------------------------------
    # Permission
    # ------------------------------------------------------------------

    def _covers(self, mode):
        return self.granted == READWRITE or self.granted == mode

    def query_permission(self, mode):
        """Non-interactive. Returns GRANTED, PROMPT or DENIED.

        DENIED: the location is gone or the backend refuses access.
        PROMPT: the user has not granted this mode, or the backend could not be
        reached to tell (try again later).
        """
        _check_mode(mode)
        try:
            reachable = self._probe(mode)
        except Exception as e:
            logger.warning("Could not check access to %s: %s", self.label, e)
            return PROMPT
        if not reachable:
            return DENIED
        return GRANTED if self._covers(mode) else PROMPT

    def request_permission(self, mode, prompt=None):
        """May ask the user. Returns GRANTED, PROMPT or DENIED."""
        current = self.query_permission(mode)
        if current != PROMPT or self._covers(mode):
            return current
        prompt = prompt or confirm_access
        if not prompt(self, mode):
            return DENIED
        self.granted = READWRITE if mode == READWRITE or self.granted == READWRITE else READ
        return self.query_permission(mode)

    def revoke(self):
        self.granted = None

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    @abstractmethod
    def _probe(self, mode):
        """True if the location exists and the backend allows mode, False if it refuses.

        May raise when the backend can't be reached; that reads as PROMPT.
        """
        pass

    @abstractmethod
    def read_text(self, name):
        """Return the named document's text. Raises FileNotFoundError if absent."""
        pass

    @abstractmethod
    def write_text(self, name, text):
        """Create or overwrite the named document."""
        pass

    @abstractmethod
    def to_dict(self):
        """Serializable form, stored in the local cache under 'handle'."""
        pass

    @property
    @abstractmethod
    def label(self):
        """Human-readable location."""
        pass

    def __eq__(self, other):
        if not isinstance(other, StorageHandle):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    __hash__ = None

    def __repr__(self):
        return f"<{type(self).__name__} {self.label} granted={self.granted}>"
