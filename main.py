from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn
from app.chat.api.route import chat_router
from app.chat.repository.chat_repository import ChatRepository
from app.chat.service.orchestrator import ChatOrchestrator
from app.chat.service.stream_registry import StreamSessionRegistry, close_stream_context, get_stream_context
from app.chat.service.title_service import TitleGenerator
from app.core.config import settings
from app.core.errors import ChatError, RequestInvalidError
from app.core.logger import get_logger
from app.core.tasks import pending_background_tasks
from app.llm.service.router_service import ModelRouter
from pkg.auth_token_client.client import TokenClient
from pkg.db_util.postgres_conn import PostgresConnection
from pkg.db_util.types import PostgresConfig
from dotenv import load_dotenv
import asyncio
import os
import sys

# Load .env so os.getenv picks up values from your .env file
load_dotenv()

logger = get_logger("stream-chat-orchestrator")


def _degraded(app: FastAPI, error_msg: str) -> None:
    # Minimal state so the health endpoint works
    app.state.logger = logger
    app.state.postgres_conn = None
    app.state.orchestrator = None
    app.state.stream_context = None
    app.state.startup_complete = False
    app.state.startup_error = error_msg


def _postgres_config() -> PostgresConfig:
    """DATABASE_URL wins; otherwise every POSTGRES_* variable must be set."""
    if settings.DATABASE_URL:
        return PostgresConfig.from_url(settings.DATABASE_URL.strip(), pool_timeout=30)

    required_env_vars = {
        "POSTGRES_HOST": settings.POSTGRES_HOST.strip(),
        "POSTGRES_USER": settings.POSTGRES_USER.strip(),
        "POSTGRES_PASSWORD": settings.POSTGRES_PASSWORD.strip(),
        "POSTGRES_DB": settings.POSTGRES_DB.strip(),
    }
    missing_vars = [key for key, value in required_env_vars.items() if not value]
    if missing_vars:
        raise ValueError(f"Missing required environment variables: {', '.join(missing_vars)}")
    return PostgresConfig(
        host=required_env_vars["POSTGRES_HOST"],
        port=settings.POSTGRES_PORT,
        username=required_env_vars["POSTGRES_USER"],
        password=required_env_vars["POSTGRES_PASSWORD"],
        database=required_env_vars["POSTGRES_DB"],
        pool_timeout=30,  # cloud databases can be slow to hand out connections
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager - ensures startup completes before accepting requests"""
    logger.info(f"{settings.APP_NAME} starting up...")
    logger.info(f"Python: {sys.version}")
    logger.info(f"Working directory: {os.getcwd()}")

    try:
        postgres_config = _postgres_config()
    except ValueError as e:
        logger.error(str(e))
        logger.error("Application will start in degraded mode")
        _degraded(app, str(e))
        yield
        return

    postgres_conn = None
    try:
        postgres_conn = PostgresConnection(postgres_config, logger)

        logger.info("Initializing database engine with retry logic...")
        try:
            await asyncio.wait_for(postgres_conn.get_engine(max_retries=5, initial_delay=2.0), timeout=60.0)
            logger.info("✓ Postgres engine initialized and cached during startup.")
        except asyncio.TimeoutError:
            logger.error("Database connection timed out after 60 seconds")
            raise ConnectionError("Database connection timeout - check network/credentials")

        logger.info("Tables needed: conversations, messages, streams, token_usage (scripts/create_tables.py)")

        chat_repo = ChatRepository(postgres_conn)
        router = ModelRouter()
        enabled = [name for name, ok in router.enabled_providers().items() if ok]
        if enabled:
            logger.info(f"Model providers enabled: {', '.join(enabled)}")
        else:
            logger.warning("No model provider API keys set; chat requests will be rejected")

        # Resumable streams are optional; without Redis the service streams directly
        stream_context = await get_stream_context()
        registry = StreamSessionRegistry(chat_repo, stream_context, context_factory=get_stream_context)
        orchestrator = ChatOrchestrator(
            chat_repo,
            router,
            registry,
            title_generator=TitleGenerator(router),
        )

        app.state.logger = logger
        app.state.postgres_conn = postgres_conn
        app.state.chat_repo = chat_repo
        app.state.model_router = router
        app.state.token_client = TokenClient(settings.JWT_SUPER_SECRET)
        app.state.stream_context = stream_context
        app.state.stream_registry = registry
        app.state.orchestrator = orchestrator
        app.state.startup_complete = True
        app.state.startup_error = None

        logger.info("✓ Startup complete - application is ready!")

    except Exception as e:
        logger.error(f"✗ Startup failed: {e}", exc_info=True)
        logger.error("Application will start in degraded mode - check logs above")
        _degraded(app, str(e))

    yield

    logger.info(f"{settings.APP_NAME} shutting down...")
    await close_stream_context()
    if postgres_conn is not None:
        await postgres_conn.close_engine()


app = FastAPI(
    title=settings.APP_NAME,
    description="Streaming chat orchestration with resumable streams and usage accounting",
    version="1.0.0",
    lifespan=lifespan
)


# Startup Check Middleware - ensures no requests processed before startup completes
class StartupCheckMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path in ["/health", "/", "/docs", "/openapi.json"]:
            return await call_next(request)

        if not getattr(request.app.state, "startup_complete", False):
            startup_error = getattr(request.app.state, "startup_error", None)
            message = (
                f"Service initialization failed: {startup_error}" if startup_error
                else "Service is starting up. Please retry in a few seconds."
            )
            return JSONResponse(status_code=503, content={"status": False, "message": message})

        return await call_next(request)


app.add_middleware(StartupCheckMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # adjust in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Convert HTTPException to standardized error format"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": False,
            "message": exc.detail
        },
        headers=exc.headers
    )


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return exc.to_response()


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    cause = errors[0].get("msg") if errors else None
    return RequestInvalidError(cause=cause).to_response()


app.include_router(chat_router)


@app.get("/health")
async def health():
    """Health check that shows component status"""
    startup_complete = getattr(app.state, "startup_complete", False)
    startup_error = getattr(app.state, "startup_error", None)

    # 200 for platform health checks even during startup
    if not startup_complete:
        return JSONResponse(
            status_code=200,
            content={
                "status": "starting" if startup_error is None else "degraded",
                "service": settings.APP_NAME,
                "message": startup_error or "Application is still starting up...",
                "startup_complete": False
            }
        )

    postgres_conn = getattr(app.state, "postgres_conn", None)
    registry = getattr(app.state, "stream_registry", None)
    database_ok = await postgres_conn.ping() if postgres_conn else False
    router = getattr(app.state, "model_router", None)
    providers = router.enabled_providers() if router else {}
    checks = {
        "database": "✓ connected" if database_ok else "✗ unreachable",
        "resumable_streams": "✓ enabled" if registry is not None and registry.resumable else "✗ disabled",
        "providers": {name: "✓ ready" if ok else "✗ no_api_key" for name, ok in providers.items()},
        "background_tasks": pending_background_tasks(),
    }
    all_healthy = database_ok and any(providers.values())

    return {
        "status": "ok" if all_healthy else "degraded",
        "service": settings.APP_NAME,
        "checks": checks,
        "startup_complete": True
    }


@app.get("/")
async def root():
    """Root endpoint - simple check that app is running"""
    return {
        "service": settings.APP_NAME,
        "version": "1.0.0",
        "status": "running",
        "health_check": "/health"
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
