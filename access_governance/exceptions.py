"""
Governance Exceptions

Errors raised synchronously to callers of the governance core. Batch
operations catch per-item failures themselves; everything else propagates.
"""

from typing import Optional


class GovernanceError(Exception):
    """Base class for governance errors."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(GovernanceError):
    """Raised when a rule, violation, request, session or anomaly is missing.

    Attributes:
        entity: Kind of record that was looked up
        entity_id: Identifier that was not found
    """

    status_code = 404
    error_type = "not_found_error"

    def __init__(self, entity: str, entity_id: Optional[str] = None, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message or f"{entity} not found: {entity_id}")


class InvalidState(GovernanceError):
    """Raised when an operation is attempted from a terminal or wrong state.

    Example:
        if request.status != AccessRequestStatus.PENDING:
            raise InvalidState(f"Request already {request.status.value}")
    """

    status_code = 409
    error_type = "conflict_error"


class InvalidArgument(GovernanceError):
    """Raised for arguments that can never succeed, e.g. revoking an app
    that is not part of the violation."""

    status_code = 400
    error_type = "validation_error"


class PermissionDenied(GovernanceError):
    """Raised when the actor may not perform the operation on the record."""

    status_code = 403
    error_type = "authorization_error"


class DuplicateOpenViolation(GovernanceError):
    """Raised by a store when an open violation already exists for the
    (tenant, user, rule) triple."""

    status_code = 409
    error_type = "conflict_error"

    def __init__(self, tenant_id: str, user_id: str, sod_rule_id: str):
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.sod_rule_id = sod_rule_id
        super().__init__(
            f"Open violation already exists for user {user_id} and rule {sod_rule_id}"
        )
