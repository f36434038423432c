from __future__ import annotations


class AutomationConfigError(Exception):
    """Raised when a stored rule, condition or action cannot be executed as configured."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class WebhookDeliveryError(Exception):
    """Raised when a webhook could not be delivered through the egress proxy."""

    def __init__(self, message: str, *, status_code: int | None = None, attempts: int = 1) -> None:
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)
