import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chat_ledger.core.config import settings, require_jwt_secret
from chat_ledger.core.database import dispose_engine, init_engine
from chat_ledger.routes.balance import router as balance_router
from chat_ledger.routes.chat import router as chat_router
from chat_ledger.services.ledger import (
    AccountNotFoundError,
    IdempotencyKeyConflictError,
    InsufficientBalanceError,
    StorageFailureError,
)
from chat_ledger.services.pricing import format_units_to_usd

logger = logging.getLogger(__name__)

require_jwt_secret()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_engine()
    logger.info("Startup config: ENV=%s welcome_bonus_units=%s", settings.ENV, settings.WELCOME_BONUS_UNITS)
    try:
        yield
    finally:
        dispose_engine()


app = FastAPI(title="Chat Ledger", lifespan=lifespan)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


def _error_response(status_code: int, message: str, details: dict | None = None) -> JSONResponse:
    payload: dict = {"error": _error_code(status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    response = _error_response(exc.status_code, message, details)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


def _jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may carry exception instances from field validators.
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": _jsonable_errors(exc)},
        },
    )


@app.exception_handler(InsufficientBalanceError)
def insufficient_balance_handler(request: Request, exc: InsufficientBalanceError):  # noqa: ARG001
    return _error_response(
        402,
        "Insufficient balance",
        {
            "required_usd": format_units_to_usd(exc.required),
            "current_balance_usd": format_units_to_usd(exc.available),
        },
    )


@app.exception_handler(AccountNotFoundError)
def account_not_found_handler(request: Request, exc: AccountNotFoundError):  # noqa: ARG001
    return _error_response(404, "Balance not found")


@app.exception_handler(IdempotencyKeyConflictError)
def idempotency_conflict_handler(request: Request, exc: IdempotencyKeyConflictError):  # noqa: ARG001
    return _error_response(409, str(exc))


@app.exception_handler(StorageFailureError)
def storage_failure_handler(request: Request, exc: StorageFailureError):  # noqa: ARG001
    logger.error("Ledger storage failure: %s", exc)
    return _error_response(503, "Balance service temporarily unavailable; please retry")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(balance_router)
app.include_router(chat_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
