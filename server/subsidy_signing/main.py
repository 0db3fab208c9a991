from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from subsidy_signing.api.dependencies.providers import get_pdf_filler
from subsidy_signing.api.routes import applications, health, sessions, webhooks
from subsidy_signing.core.config import get_settings
from subsidy_signing.core.errors import SubsidySigningError
from subsidy_signing.core.logging import configure_logging, get_logger
from subsidy_signing.forms.catalog import validate_catalogs

configure_logging(get_settings().log_level)
logger = get_logger(__name__)


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name)
    application.include_router(health.router)
    application.include_router(sessions.router)
    application.include_router(webhooks.router)
    application.include_router(applications.router)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin).rstrip("/") for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @application.exception_handler(SubsidySigningError)
    async def subsidy_signing_error_handler(request: Request, exc: SubsidySigningError) -> JSONResponse:
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "request.failed",
            path=request.url.path,
            error_code=exc.error_code,
            error=exc.error_message,
            details=exc.details,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @application.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"] if part != "body")
            errors.append(f"{location}: {error['msg']}" if location else error["msg"])
        logger.warning("request.invalid", path=request.url.path, errors=errors)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "validation_error", "message": "Request validation failed", "details": {"validation_errors": errors}},
        )

    @application.on_event("startup")
    async def startup_event() -> None:  # pragma: no cover - side effect
        logger.info("application.startup", environment=settings.environment, provider=settings.esign_provider)
        validate_catalogs()
        if settings.pdf_check_on_startup:
            get_pdf_filler().check_templates()
        missing = settings.missing_provider_settings()
        if missing:
            logger.warning("application.provider_not_configured", provider=settings.esign_provider, missing=missing)

    @application.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - side effect
        logger.info("application.shutdown")

    return application


app = create_application()
