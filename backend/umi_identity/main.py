"""FastAPI application entrypoint for the Umi Health identity backend.

Sets up the application, middleware and routes and provides a lifespan
context manager that checks the signing keys, initializes the database and
runs the token cleanup worker.
"""

import asyncio
from contextlib import asynccontextmanager

import uvicorn
from api.routes.auth import router as auth_router
from config.config import settings
from core.logging import logger, request_context
from core.tokens import get_token_signer
from db.session import engine, initialize_database
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from services.maintenance import create_cleanup_worker
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

DB_INIT_RETRIES = 5


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context to run startup and shutdown routines.

    Startup fails immediately when the signing key is missing or unusable.
    Database initialization is retried a few times in case the database is
    still coming up.

    Yields:
        None: Control is returned to FastAPI while the app is running.
    """
    logger.info("Starting up")

    signer = get_token_signer()
    logger.info("Signing with key kid={}", signer.key_ring.key_id)

    for attempt in range(DB_INIT_RETRIES):
        try:
            await initialize_database()
            break
        except (OSError, SQLAlchemyError) as e:
            # NOTE: the database may still be starting when the service does.
            if attempt < DB_INIT_RETRIES - 1:
                logger.warning(
                    "Database connection attempt {} failed: {}. Retrying..",
                    attempt + 1,
                    e,
                )
                await asyncio.sleep(2)
            else:
                logger.exception(
                    "Failed to create database tables after {} attempts", DB_INIT_RETRIES
                )
                raise

    worker = create_cleanup_worker()
    await worker.start()

    yield

    logger.info("Shutting down")
    await worker.stop()
    await engine.dispose()


app = FastAPI(lifespan=lifespan, root_path="/api", title="Umi Health Identity")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    """Tag every log record of a request with its ``X-Request-ID``."""
    with request_context(request.headers.get("x-request-id")) as request_id:
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(StarletteHTTPException)
async def auth_http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Send structured failure details as the body itself, not under ``detail``."""
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code, content=exc.detail, headers=exc.headers
        )
    return await http_exception_handler(request, exc)


@app.get("/")
async def root():
    """Return a simple health check / landing response.

    Returns:
        JSONResponse: A JSON object signalling the backend is reachable.
    """

    return JSONResponse({"message": "Umi Health Identity"})


app.include_router(auth_router)


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
