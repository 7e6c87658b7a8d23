"""Bridge server: one fixed REST surface per backend adapter.

Endpoints:
  GET  /health            Readiness probe, always HTTP 200
  POST /api/query         Buffered query
  POST /api/query/stream  Streaming query (SSE), ends with [DONE] or {"error"}
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sse_starlette.sse import EventSourceResponse

from .adapter_base import BackendAdapter
from .errors import BridgeError, UserInputError
from .http_utils import error_response, parse_json_object, sse_data
from .models import QueryRequest, QueryResult, StreamQueryRequest

logger = logging.getLogger(__name__)

STREAM_DONE = "[DONE]"


def _validate(model_cls: type[BaseModel], payload: dict) -> BaseModel:
    try:
        return model_cls.model_validate(payload)
    except ValidationError as e:
        errors = e.errors()
        if any(err.get("loc", ())[:1] == ("prompt",) for err in errors):
            raise UserInputError("Missing prompt") from e
        raise UserInputError(f"Invalid request: {errors[0].get('msg', 'validation failed')}") from e


async def relay_stream(adapter: BackendAdapter, prompt: str, model: str) -> AsyncIterator[dict]:
    """Frame adapter chunks as SSE events, always ending with one terminal event."""
    chunks = adapter.invoke_stream(prompt, model)
    try:
        async for chunk in chunks:
            yield sse_data({"chunk": chunk})
    except BridgeError as e:
        logger.warning("%s stream failed: %s", adapter.descriptor.name, e.message)
        yield sse_data({"error": e.message})
        return
    except Exception as e:
        logger.exception("%s stream crashed: %s", adapter.descriptor.name, e)
        yield sse_data({"error": "Internal server error"})
        return
    finally:
        await chunks.aclose()
    yield sse_data(STREAM_DONE)


def create_bridge_app(adapter: BackendAdapter) -> FastAPI:
    descriptor = adapter.descriptor

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await adapter.start()
        try:
            readiness = await adapter.check_readiness()
        except Exception as e:
            logger.warning("%s initial readiness check failed: %s", descriptor.service, e)
        else:
            logger.info(
                "%s bridge started (backend=%s, default model=%s, status=%s)",
                descriptor.service, descriptor.name, descriptor.default_model, readiness.status,
            )
            if readiness.status != "ok":
                logger.warning("%s: %s", descriptor.service, readiness.message)
        yield
        await adapter.stop()
        logger.info("%s bridge stopped", descriptor.service)

    app = FastAPI(title=descriptor.service, lifespan=lifespan)
    app.state.adapter = adapter

    # --- Error handling ---

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    # --- Routes ---

    @app.get("/health")
    async def health():
        try:
            readiness = await adapter.check_readiness()
        except Exception as e:
            logger.warning("%s readiness check failed: %s", descriptor.name, e)
            return {
                "status": "degraded",
                "service": descriptor.service,
                "message": f"Readiness check failed: {e}",
            }
        return {
            "status": readiness.status,
            "service": descriptor.service,
            **readiness.fields,
            "message": readiness.message,
        }

    @app.post("/api/query")
    async def query(request: Request):
        req = _validate(QueryRequest, parse_json_object(await request.body()))
        model = req.model or descriptor.default_model
        text = await adapter.invoke(req.prompt, model)
        return QueryResult(response=text, model=model, user_id=req.user_id).model_dump()

    @app.post("/api/query/stream")
    async def query_stream(request: Request):
        req = _validate(StreamQueryRequest, parse_json_object(await request.body()))
        model = req.model or descriptor.default_model
        # Auth failures are reported synchronously; no stream is opened.
        await adapter.ensure_ready()
        return EventSourceResponse(
            relay_stream(adapter, req.prompt, model),
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app
