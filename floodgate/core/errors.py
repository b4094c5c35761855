from __future__ import annotations

from typing import Optional


class FloodgateError(Exception):
    pass


class ValidationError(FloodgateError, ValueError):
    """Malformed address; rejected before it reaches the store."""


class ExecutionError(FloodgateError):
    """An enforcement action failed or could not be launched."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class QueryError(FloodgateError):
    """The traffic aggregate source was unreachable or returned garbage."""


class AlertDeliveryError(FloodgateError):
    pass
