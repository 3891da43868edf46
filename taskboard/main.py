import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from taskboard.cache.coordinator import CacheCoordinator
from taskboard.cache.layer import CacheLayer
from taskboard.core.config import get_settings
from taskboard.core.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    Conflict,
    DependencyUnavailable,
    DomainError,
    NotFound,
    ValidationError,
)
from taskboard.database import build_engine, build_session_factory, create_db_and_tables
from taskboard.routers import tasks, users

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFound: status.HTTP_404_NOT_FOUND,
    Conflict: status.HTTP_409_CONFLICT,
    AuthenticationRequired: status.HTTP_401_UNAUTHORIZED,
    AuthorizationDenied: status.HTTP_403_FORBIDDEN,
    DependencyUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    )

    engine = build_engine(settings.database_url, echo=settings.debug)
    if settings.create_tables_on_startup:
        await create_db_and_tables(engine)
    app.state.session_factory = build_session_factory(engine)

    cache = CacheLayer(settings)
    await cache.init_cache()
    app.state.cache = cache
    app.state.cache_coordinator = CacheCoordinator(cache, settings)

    yield

    await cache.close()
    await engine.dispose()


app = FastAPI(
    title="Taskboard API",
    description="Multi-user task tracking API with role-based access and a Redis read cache",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(users.router)
app.include_router(tasks.router)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    headers = {"WWW-Authenticate": "Bearer"} if code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    message = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ValidationError(message).to_dict(),
    )


@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def store_unavailable_handler(request: Request, exc: Exception):
    logger.error(f"Store unavailable: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=DependencyUnavailable("Store unavailable").to_dict(),
    )


@app.get("/")
async def root():
    return {
        "message": "Welcome to Taskboard API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check(request: Request):
    return {"status": "healthy", "cache": request.app.state.cache.get_stats()}
