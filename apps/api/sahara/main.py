import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sahara.admin_api import admin_router
from sahara.billing_api import billing_router
from sahara.errors import SaharaError
from sahara.insights_api import insights_router
from sahara.logging_config import configure_logging
from sahara.monitoring_api import monitoring_router
from sahara.notifications_api import notifications_router
from sahara.preferences_api import preferences_router
from sahara.ratings_api import ratings_router

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Sahara API", version="0.1.0")
app.include_router(admin_router)
app.include_router(monitoring_router)
app.include_router(notifications_router)
app.include_router(billing_router)
app.include_router(ratings_router)
app.include_router(preferences_router)
app.include_router(insights_router)


@app.exception_handler(SaharaError)
async def sahara_error_handler(request: Request, exc: SaharaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "details": exc.details},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )
