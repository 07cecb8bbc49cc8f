from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware, structlog
from .services.errors import CrmError
from .auth.router import router as auth_router
from .routes.users import router as users_router
from .routes.work_assignments import router as work_assignments_router
from .routes.work_checkins import router as work_checkins_router


logger = structlog.get_logger(__name__)


def _validation_details(exc: RequestValidationError) -> list:
    return [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CrmError)
    async def crm_error_handler(request: Request, exc: CrmError):
        logger.info("request_rejected", path=request.url.path, status_code=exc.status_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid data format", "details": _validation_details(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_exception", path=request.url.path, method=request.method, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    register_exception_handlers(app)

    # Routers
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(work_assignments_router)
    app.include_router(work_checkins_router)

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok"}

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
        logger.info("startup_complete", app=settings.app_name, environment=settings.environment)

    return app


app = create_app()
