"""Error taxonomy for the invoice bundle pipeline."""


class DocsplitError(Exception):
    """Base exception for pipeline errors."""

    pass


class ParseFailure(DocsplitError):
    """Oracle reply was not the JSON shape the caller expected."""

    pass


class ValidationFailure(DocsplitError):
    """A required canonical field is missing after normalization."""

    pass


class ExternalServiceFailure(DocsplitError):
    """The layout service or the inference oracle failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class SchemaViolation(DocsplitError):
    """An extracted value does not fit the shape of its field."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class TilingError(DocsplitError):
    """Spans do not exactly tile the page range."""

    pass


class InvalidTransition(DocsplitError):
    """A batch operation was attempted from a state that does not allow it."""

    def __init__(self, operation: str, status: str):
        self.operation = operation
        self.status = status
        super().__init__(f"Cannot {operation} batch in status: {status}")


class BatchNotFound(DocsplitError):
    """No batch exists with the requested id."""

    pass


class ConfigurationError(DocsplitError):
    """Credentials or settings required by a client are missing."""

    pass
