"""Error types raised by models, instances and connectors."""


class ORMError(Exception):
    """Operational failure: missing connector, unimplemented capability, bad argument."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ORMError):
    """A field value or field reference was rejected."""

    def __init__(self, field: str | None, message: str) -> None:
        super().__init__(message)
        self.field = field
