"""Exception types shared by the router, the capability layer and the command broker."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base broker failure; ``status`` is the HTTP status the server maps it to."""

    status = 500

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status


class BridgeValidationError(BridgeError):
    status = 400


class CommandConflictError(BridgeError):
    status = 409


class NoHelperConnectedError(BridgeError):
    status = 409


class BridgeTimeoutError(BridgeError, TimeoutError):
    status = 504


class StateValidationError(ValueError):
    """Imported pose-library state has no recognizable slot list."""


class CapabilityUnavailable(RuntimeError):
    def __init__(self, capability: str, message: str | None = None) -> None:
        super().__init__(message or f"Capability '{capability}' is unavailable.")
        self.capability = capability


class PermissionDeniedError(CapabilityUnavailable):
    def __init__(self, scopes: list[str], message: str | None = None) -> None:
        super().__init__("permissions", message or f"Permissions not granted: {', '.join(scopes)}")
        self.scopes = list(scopes)


class ActionExecutionError(RuntimeError):
    def __init__(
        self,
        message: str,
        code: str | None = None,
        primary_error: BaseException | None = None,
        fallback_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.primary_error = primary_error
        self.fallback_error = fallback_error
