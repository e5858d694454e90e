import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from payflow.core.config import settings
from payflow.core.database import Base, engine
from payflow.core.exceptions import (
    LifecycleError,
    ValidationError,
    NotFoundError,
    StateConflictError,
    PersistenceError,
    DeliveryError,
)
from payflow.routes.transaction import (
    transaction_router,
    payment_router,
    admin_router,
    cron_router,
)

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Domain error kind -> HTTP status
ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    StateConflictError: 400,
    DeliveryError: 400,
    PersistenceError: 500,
}

HTTP_STATUS_TO_ERROR_CODE = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    500: "SERVER_ERROR",
}


app = FastAPI(title="Payflow API", version="1.0.0")

if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=engine)

app.include_router(transaction_router)
app.include_router(payment_router)
app.include_router(admin_router)
app.include_router(cron_router)


@app.get("/")
def root():
    return {"message": "Payflow API is running"}


def _error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "code": code,
                "message": message,
                "details": details
            }
        },
    )


@app.exception_handler(LifecycleError)
async def lifecycle_exception_handler(request: Request, exc: LifecycleError):
    status_code = ERROR_STATUS.get(type(exc), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        # Storage details stay in the logs
        return _error_response(status_code, exc.code, "Internal server error")
    return _error_response(status_code, exc.code, exc.message, exc.details)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_code = HTTP_STATUS_TO_ERROR_CODE.get(exc.status_code, "SERVER_ERROR")
    return _error_response(exc.status_code, error_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        422,
        HTTP_STATUS_TO_ERROR_CODE[422],
        "Invalid request: Please send the correct content type and required fields.",
        jsonable_encoder(exc.errors()),
    )
