import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from db import create_db_and_tables
from errors import AppError, InternalError, field_errors
from routers import auth, donations, notifications

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(__name__)

app = FastAPI(title="FoodBridge")


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()


def _envelope(status_code: int, message: str, errors=None) -> JSONResponse:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AppError)
def app_error_handler(request: Request, exc: AppError):
    return _envelope(exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    return _envelope(400, "Validation failed", field_errors(exc.errors()))


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _envelope(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return _envelope(InternalError.status_code, "Something went wrong!")


@app.get("/health", include_in_schema=False)
def health():
    return {"success": True, "message": "ok"}


app.include_router(auth.router, prefix="/auth")
app.include_router(donations.router, prefix="/donations")
app.include_router(notifications.router, prefix="/notifications")
