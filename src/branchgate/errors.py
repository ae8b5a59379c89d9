"""
Error taxonomy for branchgate.

Every error carries a human-readable message, a stable machine code and an
optional details dict, so the HTTP layer can serialize it without guessing.
"""

from typing import Any, Dict, Optional


class BranchGateError(Exception):
    """Base class for all branchgate errors."""

    code = "BRANCHGATE_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.cause is not None:
            payload["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return payload


class ConfigError(BranchGateError):
    """Unknown access method, malformed policy table or invalid settings."""

    code = "CONFIG_ERROR"


class StoreError(BranchGateError):
    """Persistence read/write failure."""

    code = "STORE_ERROR"


class SessionError(BranchGateError):
    """Create, refresh or terminate failure. ``cause`` holds the underlying error."""

    code = "SESSION_ERROR"
