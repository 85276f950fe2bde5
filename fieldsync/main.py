"""
main.py — FastAPI app for on-demand syncs and analytics reads

Business Rules:
- Logging is configured once at import, before the first request
- HTTP errors and validation errors share the ErrorResponse body shape
- The shared httpx client is closed on shutdown

Called by: uvicorn fieldsync.main:app
Depends on: routers/sync.py, http_client, logging_config
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .http_client import close_clients
from .logging_config import setup_logging
from .routers.sync import router as sync_router
from .schemas.errors import ErrorResponse

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("fieldsync API starting")
    yield
    await close_clients()
    logger.info("fieldsync API stopped")


app = FastAPI(title="fieldsync", version=__version__, lifespan=lifespan)
app.include_router(sync_router)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = ErrorResponse(error=str(exc.detail), status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    detail = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    body = ErrorResponse(error="Validation error", status_code=422, detail=detail)
    return JSONResponse(status_code=422, content=body.model_dump(exclude_none=True))


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}
