import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import Config
from src.config.logging_config import configure_logging
from src.utils.exceptions import BillingError

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring with adaptive sampling
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """
        Adaptive sampling to control Sentry costs while maintaining visibility.

        Sampling strategy:
        - Development: 100% (all requests)
        - Health endpoint: 0%
        - Stripe webhook: 50% (low volume, high value)
        - Other endpoints: configured SENTRY_TRACES_SAMPLE_RATE
        - Errors: Always sampled (parent_sampled)
        """
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")

        if endpoint == "/health":
            return 0.0

        if endpoint == "/functions/v1/stripe-webhook":
            return 0.5

        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        # Payment flows must not ship request bodies or user IPs to Sentry
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(
        f"Sentry initialized with adaptive sampling "
        f"(environment: {Config.SENTRY_ENVIRONMENT}, release: {Config.SENTRY_RELEASE})"
    )
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Billing Sync API",
        description="Stripe subscription commands and webhook synchronization",
        version="1.0.0",
    )

    # Browser clients call the command endpoints directly
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    from src.routes.billing import router as billing_router

    app.include_router(billing_router)

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "environment": Config.APP_ENV}

    # ==================== Exception Handlers ====================

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_response_body())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info(f"Rejected request to {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"error": "Missing required fields"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    logger.info(f"Billing API initialized (env={Config.APP_ENV})")
    return app


# Export a default app instance for environments that import `app`
app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting billing sync server...")
    uvicorn.run("src.main:app", host="0.0.0.0", port=8000, reload=True)
