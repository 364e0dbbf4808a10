"""CTMS engine errors."""


class CTMSError(Exception):
    """Base error for CTMS operations."""

    status_code = 500

    def __init__(self, message: str, code: str = "CTMS_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(CTMSError):
    """Missing required field or invalid value."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, "VALIDATION_ERROR")
        self.field = field


class AuthorizationDenied(CTMSError):
    """Role or ownership does not permit the operation."""

    status_code = 403

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or f"Access denied: {reason}", "AUTHORIZATION_DENIED")
        self.reason = reason


class NotFound(CTMSError):
    """Referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}", "NOT_FOUND")
        self.entity = entity
        self.entity_id = entity_id


class TaskNotFound(NotFound):
    def __init__(self, task_id: str):
        super().__init__("Task", task_id)
        self.task_id = task_id


class ReferentialError(CTMSError):
    """A mutation references users that do not exist."""

    status_code = 400

    def __init__(self, missing_ids: list[str]):
        super().__init__(
            f"Unknown user id(s): {', '.join(missing_ids)}",
            "REFERENTIAL_ERROR",
        )
        self.missing_ids = missing_ids


class ConflictError(CTMSError):
    """Conditional update kept losing to concurrent writers."""

    status_code = 409

    def __init__(self, task_id: str, attempts: int):
        super().__init__(
            f"Task {task_id} was modified concurrently ({attempts} attempts)",
            "CONFLICT",
        )
        self.task_id = task_id
        self.attempts = attempts


class DownstreamSideEffectFailure(CTMSError):
    """A post-commit side effect failed. Logged, never returned to the caller."""

    def __init__(self, job_name: str, attempts: int, cause: BaseException):
        super().__init__(
            f"Side effect {job_name} failed after {attempts} attempt(s): {cause}",
            "SIDE_EFFECT_FAILURE",
        )
        self.job_name = job_name
        self.attempts = attempts
        self.cause = cause
