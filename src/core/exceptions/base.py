from typing import Any


class AppException(Exception):
    """Base application exception."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Validation error."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class AuthenticationError(AppException):
    """Authentication failed."""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message=message, status_code=401)


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403)


class DuplicateError(AppException):
    """Duplicate resource."""

    def __init__(self, resource: str, field: str, value: Any):
        message = f"{resource} with {field}={value} already exists"
        super().__init__(message=message, status_code=409, details={"field": field, "value": value})


# --- Ledger lifecycle conflicts ---
# These are expected outcomes of concurrent usage. Each carries the current
# state so the caller can decide whether to refresh, retry or inform the user.


class InvalidTransitionError(AppException):
    """Operation is not legal in the entity's current lifecycle state."""

    def __init__(self, entity: str, entity_id: Any, current_status: str, action: str):
        message = f"Cannot {action} {entity} {entity_id}: status is '{current_status}'"
        super().__init__(
            message=message,
            status_code=409,
            details={
                "entity": entity,
                "entity_id": entity_id,
                "current_status": current_status,
                "action": action,
            },
        )


class AlreadySettledError(AppException):
    """Target is already fully settled."""

    def __init__(self, entity: str, entity_id: Any, current_status: str):
        message = f"{entity} {entity_id} is already settled (status '{current_status}')"
        super().__init__(
            message=message,
            status_code=409,
            details={"entity": entity, "entity_id": entity_id, "current_status": current_status},
        )


class ObligationUnavailableError(AppException):
    """Tuition is paid or soft-locked by another active payment request."""

    def __init__(
        self,
        tuition_ids: list[int],
        reason: str,
        held_by_request_id: int | None = None,
    ):
        ids = ", ".join(str(t) for t in tuition_ids)
        message = f"Tuition(s) {ids} unavailable: {reason}"
        super().__init__(
            message=message,
            status_code=409,
            details={
                "tuition_ids": tuition_ids,
                "reason": reason,
                "held_by_request_id": held_by_request_id,
            },
        )


class DisambiguationExhaustedError(AppException):
    """No free unique code could be found; safe to retry shortly."""

    retryable = True

    def __init__(self, base_amount: Any, attempts: int):
        message = (
            f"Could not allocate a unique transfer amount for {base_amount} "
            f"after {attempts} attempts. Please try again."
        )
        super().__init__(
            message=message,
            status_code=503,
            details={"base_amount": str(base_amount), "attempts": attempts},
        )


class StaleRequestError(AppException):
    """Payment request no longer matches the tuitions it was created for."""

    def __init__(self, request_id: int, reason: str):
        message = f"Payment request {request_id} is stale: {reason}"
        super().__init__(
            message=message,
            status_code=409,
            details={"request_id": request_id, "reason": reason},
        )


class DuplicateGrantError(AppException):
    """Scholarship with the same student, class and name already exists."""

    def __init__(self, student_id: int, class_academic_id: int, name: str):
        message = (
            f"Scholarship '{name}' already exists for student {student_id} "
            f"in class {class_academic_id}"
        )
        super().__init__(
            message=message,
            status_code=409,
            details={
                "student_id": student_id,
                "class_academic_id": class_academic_id,
                "name": name,
            },
        )


class ConcurrencyConflictError(AppException):
    """Row changed under us between read and write; safe to retry."""

    retryable = True

    def __init__(self, entity: str, entity_id: Any = None):
        message = f"{entity} was modified concurrently, please retry"
        super().__init__(
            message=message,
            status_code=409,
            details={"entity": entity, "entity_id": entity_id},
        )
