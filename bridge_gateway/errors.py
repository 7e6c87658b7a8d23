"""Failure taxonomy shared by adapters and bridge servers."""

from __future__ import annotations


class BridgeError(Exception):
    """Base error rendered by the bridge as a JSON envelope."""

    status_code = 500
    kind = "bridge_error"

    def __init__(self, message: str, *, detail: str = "", solution: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.solution = solution

    def to_payload(self) -> dict:
        payload = {"success": False, "error": self.message, "kind": self.kind}
        if self.detail:
            payload["detail"] = self.detail
        if self.solution:
            payload["solution"] = self.solution
        return payload


class UserInputError(BridgeError):
    status_code = 400
    kind = "user_input"

    def to_payload(self) -> dict:
        return {"error": self.message}


class AuthRequired(BridgeError):
    status_code = 401
    kind = "auth_required"

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.solution:
            payload["solution"] = self.solution
        return payload


class BackendUnreachable(BridgeError):
    kind = "backend_unreachable"


class BackendProcessError(BridgeError):
    kind = "backend_process"

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = ""):
        super().__init__(message, detail=stderr)
        self.exit_code = exit_code
        self.stderr = stderr

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        return payload


class StreamParseError(BridgeError):
    """A malformed stream unit. Never surfaced to callers; the unit is dropped."""

    kind = "stream_parse"
