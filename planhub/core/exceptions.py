"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from planhub.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="RootDocument", resource_id=root_id)
    raise ValidationError("change_ids must not be empty", details={"change_ids": "empty"})

Propagation policy for apply_changes:
    ValidationError, NotFoundError and ConflictError abort the whole call
    before anything is written.  CascadeFailure is recovered per derived
    document inside the cascade applier and never reaches a caller.
"""


class NotFoundError(Exception):
    """Raised when a root, derived document or pending change does not exist.

    Also used when an id exists but belongs to a different root, so callers
    cannot probe another root's records.

    Args:
        resource: Human-readable entity name (e.g. "RootDocument", "PendingChange").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or violates a business rule.

    Examples: empty batch, malformed field path, unknown document type,
    cascade target without an eligible impact, root status regression.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a pending change's recorded old value is stale.

    The root's live value at the change's field path no longer matches the
    snapshot taken at submission time.  Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field path (or attribute) in conflict.
        value: The conflicting live value, if any.
        change_ids: Every pending change id in the batch found to be stale.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        change_ids: list[str] | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.change_ids = list(change_ids or [])
        msg = f"{resource} {field} changed since submission"
        if value is not None:
            msg += f" (now {value!r})"
        super().__init__(msg)


class CascadeFailure(Exception):
    """A single derived document's regeneration failed or timed out.

    Args:
        derived_document_id: The document whose regeneration failed.
        reason: Collaborator error text or timeout description.
    """

    def __init__(self, derived_document_id: str, reason: str) -> None:
        self.derived_document_id = derived_document_id
        self.reason = reason
        super().__init__(f"Regeneration failed for {derived_document_id}: {reason}")
