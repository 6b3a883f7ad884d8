import time

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from marketplace.config import get_settings
from marketplace.database import close_db, init_db
from marketplace.utils.logger import get_logger
from marketplace.rate_limit import limiter
from marketplace.services.auth_service import AuthService
from marketplace.services.cache import RedisCache
from marketplace.services.mail import MailService
from marketplace.services.sms import SmsService
from marketplace.services.users_service import UsersService

logger = get_logger("main")
settings = get_settings()

# Routers
from marketplace.routers import auth as auth_router
from marketplace.routers import users as users_router
from marketplace.routers import mail as mail_router
from marketplace.routers import health as health_router

app = FastAPI(
    title="Marketplace API",
    debug=settings.APP_DEBUG,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router.router)
app.include_router(users_router.router)
app.include_router(mail_router.router)
app.include_router(health_router.router)


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail} - Path: {request.url.path}")
    else:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail} - Path: {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {len(exc.errors())} error(s)")
    return JSONResponse(
        status_code=422,
        content={
            "detail": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                for e in exc.errors()
            ],
            "status_code": 422,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "status_code": 500}
    )


# Middleware Logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.3f}s"
    )
    return response


@app.on_event("startup")
async def on_startup():
    logger.info("Starting application...")
    await init_db()
    logger.info("Database initialized")

    cache = RedisCache.from_url(settings.REDIS_URL)
    users_service = UsersService()
    sms_service = SmsService(settings)
    mail_service = MailService(settings)

    app.state.cache = cache
    app.state.users_service = users_service
    app.state.sms_service = sms_service
    app.state.mail_service = mail_service
    app.state.auth_service = AuthService(
        users=users_service,
        cache=cache,
        sms=sms_service,
        mail=mail_service,
        settings=settings,
    )
    logger.info(f"Application ready (env={settings.APP_ENV}, sms={sms_service.provider})")


@app.on_event("shutdown")
async def on_shutdown():
    cache = getattr(app.state, "cache", None)
    if cache is not None:
        await cache.close()
    close_db()
    logger.info("Shutting down application...")
