class StatementDecodeError(Exception):
    """The PDF bytes could not be decoded into pages of text."""


class InvalidDateError(ValueError):
    pass


class ParseCancelled(Exception):
    pass


class MLServiceError(Exception):
    def __init__(self, message: str, service: str, operation: str):
        super().__init__(f"[{service}:{operation}] {message}")
        self.service = service
        self.operation = operation
