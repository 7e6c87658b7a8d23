"""HTTP helpers for bridge route handlers."""

import json
from typing import Any

from fastapi.responses import JSONResponse

from .errors import BridgeError, UserInputError


def error_response(exc: BridgeError) -> JSONResponse:
    """Render a bridge error as its stable JSON envelope."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def parse_json_object(body: bytes) -> dict[str, Any]:
    if not body:
        raise UserInputError("Missing prompt")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise UserInputError(f"Invalid JSON body: {e.msg}") from e
    if not isinstance(payload, dict):
        raise UserInputError("JSON body must be an object")
    return payload


def sse_data(payload: dict[str, Any] | str) -> dict[str, str]:
    """One SSE event carrying a JSON object, or a literal marker such as [DONE]."""
    if isinstance(payload, str):
        return {"data": payload}
    return {"data": json.dumps(payload, ensure_ascii=False)}
