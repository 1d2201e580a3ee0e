import logging
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, settings as default_settings
from .errors import PaymentError
from .routers import payments
from .services.payments import PaymentLifecycleManager
from .services.paypal import PayPalClient
from .store import SQLPaymentStore, build_store

logger = logging.getLogger(__name__)


def build_manager(settings: Settings) -> PaymentLifecycleManager:
    config = settings.processor_config()
    return PaymentLifecycleManager(PayPalClient(config), build_store(settings), config)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if any(e.get("type") == "missing" for e in errors):
        return "Missing required fields: customer_name, customer_email, and amount are required"
    if not errors:
        return "Invalid request"
    msg = str(errors[0].get("msg", "Invalid request"))
    return msg.removeprefix("Value error, ")


def create_app(settings: Optional[Settings] = None,
               manager: Optional[PaymentLifecycleManager] = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="PayPal Payments Gateway")
    app.state.settings = settings
    app.state.payments = manager or build_manager(settings)
    development = settings.development

    # CORS - allow your app domain(s)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # change to your frontend domains in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(payments.router, prefix="/api/v1")

    @app.get("/api/v1/health")
    async def health():
        return {
            "status": "success",
            "message": "API is running",
            "environment": settings.env,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.kind, exc_info=exc)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.kind)
        body = {"status": "error", "message": exc.message, "error": exc.to_dict(include_detail=development)}
        return JSONResponse(status_code=exc.http_status, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        body = {"status": "error", "message": _validation_message(exc)}
        if development:
            body["error"] = {"kind": "validation_error", "detail": jsonable_errors(exc)}
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            body = {"status": "error", "message": "Route not found", "path": request.url.path}
        else:
            body = {"status": "error", "message": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.on_event("startup")
    async def on_startup():
        store = app.state.payments.store
        if isinstance(store, SQLPaymentStore):
            # init db tables if not using migrations
            await store.init()
        logger.info("PayPal mode: %s, store: %s", settings.paypal_mode, type(store).__name__)

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.payments.aclose()

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": str(e.get("msg"))} for e in exc.errors()]


app = create_app()

if __name__ == "__main__":
    uvicorn.run("paypal_gateway.main:app", host=default_settings.app_host, port=default_settings.app_port,
                reload=(default_settings.env != "production"))
