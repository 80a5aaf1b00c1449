class EngineError(RuntimeError):
    """Base class for failures surfaced to the caller.

    Every error names the operation that failed, the object identity it was
    acting on (``namespace/name``) and the underlying cause.
    """

    error_type = "engine_error"

    def __init__(self, *, operation: str, identity: str, detail: str):
        self.operation = operation
        self.identity = identity
        self.detail = detail
        super().__init__(f"{operation} failed for {identity}: {detail}")

    def to_dict(self) -> dict[str, str]:
        return {
            "operation": self.operation,
            "identity": self.identity,
            "error_type": self.error_type,
            "detail": self.detail,
        }


class ValidationError(EngineError):
    error_type = "validation"


class NotFoundError(EngineError):
    error_type = "not_found"


class ConflictError(EngineError):
    error_type = "conflict"


class AlreadyExistsError(ConflictError):
    error_type = "already_exists"


class RemoteUnavailableError(EngineError):
    error_type = "remote_unavailable"

    def __init__(
        self,
        *,
        operation: str,
        identity: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(operation=operation, identity=identity, detail=detail)


class PartialCreationError(EngineError):
    error_type = "partial_creation"

    def __init__(self, *, operation: str, identity: str, detail: str, secret_name: str):
        self.secret_name = secret_name
        super().__init__(
            operation=operation,
            identity=identity,
            detail=f"{detail} (overflow secret {secret_name} was left in place)",
        )
