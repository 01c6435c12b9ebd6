"""
Error taxonomy for the SQLDesk core.

NotFound, Conflict, Validation and Busy are expected outcomes that callers
map to user-visible responses. Anything else (storage down, missing
encryption key) propagates as an internal failure.
"""


class SQLDeskError(Exception):
    """Base exception for core operations."""


class NotFoundError(SQLDeskError):
    """Raised when an entity does not exist or is not visible to the workspace."""

    def __init__(self, kind: str, ident: object) -> None:
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class ConflictError(SQLDeskError):
    """Raised on uniqueness violations and version races."""


class ValidationError(SQLDeskError):
    """Raised when input fails validation. `errors` holds every problem found."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or [message]
        super().__init__(message)


class BusyError(SQLDeskError):
    """Raised when a connection test is already in flight for the workspace."""

    def __init__(self, workspace_id: object) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"Connection test already in progress for workspace {workspace_id}")


class EncryptionUnavailableError(RuntimeError):
    """Raised when no usable encryption key is configured."""
