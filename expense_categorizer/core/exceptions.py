"""Custom exception classes for the engine."""

from pydantic import ValidationError as PydanticValidationError


class CategorizerError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(CategorizerError):
    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ValidationError(CategorizerError):
    """Rejected pattern authoring input, with messages keyed by field name."""

    def __init__(
        self,
        detail: str = "Validation error",
        field_errors: dict[str, list[str]] | None = None,
    ):
        super().__init__(detail)
        self.field_errors = field_errors or {}

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(f"{field}: {message}", {field: [message]})

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "ValidationError":
        field_errors: dict[str, list[str]] = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"]) or "__root__"
            message = error["msg"].removeprefix("Value error, ")
            field_errors.setdefault(field, []).append(message)
        detail = "; ".join(f"{field}: {', '.join(msgs)}" for field, msgs in field_errors.items())
        return cls(detail or "Validation error", field_errors)


class ConsistencyViolationError(CategorizerError):
    """A counter update would break success_count <= usage_count."""

    def __init__(self, rule_kind: str, rule_id: int, detail: str | None = None):
        super().__init__(detail or f"Counter update rejected for {rule_kind} {rule_id}")
        self.rule_kind = rule_kind
        self.rule_id = rule_id


class CacheInvalidationError(CategorizerError):
    """A committed write could not be confirmed as invalidated in the pattern cache."""

    def __init__(self, rule_kind: str, rule_id: int | None, detail: str | None = None):
        super().__init__(
            detail or f"Pattern cache invalidation failed after write to {rule_kind} {rule_id}"
        )
        self.rule_kind = rule_kind
        self.rule_id = rule_id
