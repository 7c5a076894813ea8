"""
Storage error taxonomy shared by both backends and the repository facade.
"""


class StoreError(Exception):
    """Base class for persistence-layer failures."""


class BackendUnavailable(StoreError):
    """Remote backend unreachable, timed out, or not configured."""


class PermissionDenied(StoreError):
    """Remote backend rejected the caller's credentials."""


class RecordNotFound(StoreError):
    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id!r} not found")


class ParseError(StoreError):
    """A single stored record could not be decoded."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Could not parse stored record {key!r}: {reason}")


class InvalidRecord(StoreError):
    """Caller-supplied data violates a record invariant."""


class MigrationFailed(StoreError):
    """The migration batch did not commit; local data is untouched."""


class Conflict(StoreError):
    """The write clashes with the stored state, e.g. the document already exists."""
