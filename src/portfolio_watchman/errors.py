class PolicyValidationError(ValueError):
    """Raised when a policy document cannot be accepted."""

    def __init__(self, message: str, rule: object = None):
        self.rule = rule
        super().__init__(message)


class SourceFetchError(RuntimeError):
    """Raised when an external data source cannot be read."""

    def __init__(self, source: str, message: str, status_code: int | None = None):
        self.source = source
        self.status_code = status_code
        super().__init__(message)
