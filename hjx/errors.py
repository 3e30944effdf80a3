class HjxError(Exception):
    """Base class for errors raised by hjx."""


class SnapshotError(HjxError):
    """A snapshot or one of its records violates the model's invariants."""


class DocumentError(SnapshotError):
    """A persisted or imported JSON document is malformed."""


class PermissionDenied(HjxError):
    """The user (or the backend) refused access to a storage location."""


class ExportError(HjxError):
    """An explicit export could not be written."""


class SelectionCancelled(HjxError):
    """The user dismissed a storage selection prompt. Not an error to report."""
