# errors.py
# Exception types raised inside the pipeline.
#
# Stages catch these at their boundary and convert them into a StageError;
# callers of Pipeline never see them raised.


class FieldFixError(Exception):
    """Base for all pipeline errors. `kind` maps onto StageError.kind."""

    kind = "internal"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InputError(FieldFixError):
    """A required request field is missing or empty. No side effects."""

    kind = "input"


class NotFoundError(FieldFixError):
    """A referenced session, observation or plan does not exist."""

    kind = "not_found"


class PreconditionError(FieldFixError):
    """The prior stage's artifact is missing, or the safety check blocks progress."""

    kind = "precondition"


class OutputParseError(FieldFixError):
    """Model output could not be turned into JSON, even after one repair prompt."""

    kind = "parse"

    def __init__(self, message: str, raw_response: str | None) -> None:
        super().__init__(message, raw_response=raw_response)
        self.raw_response = raw_response


class SchemaValidationError(FieldFixError):
    """Parsed payload failed its structural contract."""

    kind = "schema"

    def __init__(self, message: str, violations: list[dict]) -> None:
        super().__init__(message, violations=violations)
        self.violations = violations


class StoreError(FieldFixError):
    """Base for record store failures."""


class SchemaMissingError(StoreError):
    """The store's tables do not exist. A setup problem, not a request failure."""

    kind = "setup_required"
    code = "SCHEMA_MISSING"
