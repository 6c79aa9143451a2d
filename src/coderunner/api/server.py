#!/usr/bin/env python

"""
HTTP surface for the execution engine.

- POST /v1/run          - run a snippet and return its captured output
- GET  /v1/healthcheck  - report backend and supported languages

Validation mirrors the rest of the API: field problems come back as 422 with
an ``{"error": {field: message}}`` body, a body that is not JSON is a 400 with
the same shape, and engine failures are logged and reported as a generic 500.
"""

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from coderunner.config.environment import EngineSettings, Environment, load_dotenv_files
from coderunner.config.logging_config import get_logger
from coderunner.runners.engine import ExecutionEngine, build_engine
from coderunner.runners.errors import ExecutionError

log = get_logger(__name__)
router = APIRouter(prefix="/v1", tags=["run"])

SERVER_ERROR_MESSAGE = "the server encountered a problem and could not process your request"
BAD_JSON_MESSAGE = "body contains badly-formed JSON"


class RunRequest(BaseModel):
    """Request model for running a snippet."""

    code: str = Field(default="", description="Source code to execute")
    language: str = Field(default="", description="Language id, e.g. python")


def _engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def _settings(request: Request) -> EngineSettings:
    return request.app.state.settings


@router.get("/healthcheck")
async def healthcheck(request: Request):
    engine = _engine(request)
    return {
        "status": "available",
        "environment": Environment.get_env(),
        "backend": engine.backend.name,
        "isolated": engine.backend.isolated,
        "languages": engine.registry.languages(),
    }


@router.post("/run")
async def run_code(payload: RunRequest, request: Request):
    engine = _engine(request)

    errors: dict[str, str] = {}
    if not payload.code:
        errors["code"] = "must be provided"
    if payload.language not in engine.registry:
        errors["language"] = f"must be one of {', '.join(engine.registry.languages())}"
    if errors:
        return JSONResponse(status_code=422, content={"error": errors})

    try:
        result = await engine.execute_async(
            payload.code, payload.language, _settings(request).timeout_seconds
        )
    except ExecutionError as e:
        log.error("run failed for %s: %s", payload.language, e)
        return JSONResponse(status_code=500, content={"error": SERVER_ERROR_MESSAGE})

    return {"result": result.to_dict()}


def validation_errors(exc: RequestValidationError) -> tuple[int, dict[str, str]]:
    """Flatten request validation errors into ``(status, {field: message})``.

    A body that is not JSON at all is a 400, like any other unreadable request.
    """
    errors: dict[str, str] = {}
    for err in exc.errors():
        if err.get("type") == "json_invalid":
            return 400, {"body": BAD_JSON_MESSAGE}
        loc = list(err.get("loc") or ())
        if loc and loc[0] == "body":
            loc = loc[1:]
        field = ".".join(str(part) for part in loc) or "body"
        errors.setdefault(field, str(err.get("msg", "is invalid")))
    return 422, errors


def create_app(
    engine: ExecutionEngine | None = None,
    settings: EngineSettings | None = None,
) -> FastAPI:
    """Build the FastAPI app. The engine is composed once here unless supplied."""
    load_dotenv_files()
    settings = settings or Environment.get_engine_settings()
    engine = engine or build_engine(settings)

    log.info(
        "Environment configuration loaded: ENV=%s | BACKEND=%s | TIMEOUT=%ss",
        Environment.get_env(),
        engine.backend.name,
        settings.timeout_seconds,
    )

    app = FastAPI(title="coderunner")
    app.state.engine = engine
    app.state.settings = settings
    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        status_code, errors = validation_errors(exc)
        log.debug("request validation error on %s: %s", request.url.path, errors)
        return JSONResponse(status_code=status_code, content={"error": errors})

    return app


def run_server(host: str = "127.0.0.1", port: int = 4000, reload: bool = False) -> None:
    import uvicorn

    if reload:
        uvicorn.run(
            "coderunner.api.server:create_app",
            host=host,
            port=port,
            reload=True,
            factory=True,
        )
        return
    uvicorn.run(create_app(), host=host, port=port)
