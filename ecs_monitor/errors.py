"""Exception taxonomy for the monitor.

Every error aborts only its enclosing unit of work (one collection tick, or one
cluster's report compilation). The scheduler logs it and waits for the next
firing; nothing here is retried.
"""


class MonitorError(Exception):
    """Base class for all errors raised by the monitor."""


class ExternalAPIError(MonitorError):
    """Raised when an ECS or CloudWatch call fails or times out."""

    def __init__(self, service: str, operation: str, message: str) -> None:
        self.service = service
        self.operation = operation
        super().__init__(f"{service}.{operation} failed: {message}")


class PersistenceError(MonitorError):
    """Raised when a store read or write fails."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Store operation {operation} failed: {message}")


class RenderingError(MonitorError):
    """Raised when the headless browser cannot load, capture or print a report."""

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        super().__init__(f"Rendering step {step} failed: {message}")
