import asyncio

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import admin_routes, routes
from .config import EXPIRY_SWEEP_SECONDS, IS_PRODUCTION, RATE_LIMIT_PER_MINUTE, SERVICE_NAME
from .errors import BookingError
from .expiry_worker import expiry_loop
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .rabbitmq import publisher

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints."},
    {"name": "Bookings", "description": "Create, read and cancel villa bookings."},
    {"name": "Availability", "description": "Villa availability and blocked ranges."},
    {"name": "Payments", "description": "Payment gateway orders, verification and webhooks."},
    {"name": "Cancel Requests", "description": "Cancellation approval workflow."},
    {"name": "Blocked Dates", "description": "Administrator unavailability windows."},
    {"name": "Admin", "description": "Administrator operations."},
]

HTTP_ERROR_KINDS = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
}

app = FastAPI(title="Villa Booking Service", openapi_tags=OPENAPI_TAGS)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RateLimitMiddleware, max_per_minute=RATE_LIMIT_PER_MINUTE)

app.include_router(routes.router)
app.include_router(admin_routes.router)

_stop_event = asyncio.Event()
_expiry_task = None


def _error(status_code: int, error: dict, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error}, headers=headers)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return _error(exc.status_code, exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    kind = HTTP_ERROR_KINDS.get(exc.status_code, "error")
    return _error(exc.status_code, {"kind": kind, "message": str(exc.detail)}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _error(400, {"kind": "bad_request", "message": "Invalid request", "details": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    print(f"[{SERVICE_NAME}] unhandled error on {request.method} {request.url.path}: {exc!r}")
    error = {"kind": "internal", "message": "Internal server error"}
    if not IS_PRODUCTION:
        error["detail"] = str(exc)
    return _error(500, error)


@app.get("/health", tags=["System"])
async def health():
    return {
        "success": True,
        "status": "ok",
        "service": SERVICE_NAME,
        "events_enabled": publisher.enabled,
        "expiry_sweep": _expiry_task is not None,
    }


@app.on_event("startup")
async def startup():
    global _expiry_task
    try:
        await publisher.connect()
    except Exception as e:
        print(f"[{SERVICE_NAME}] RabbitMQ connect failed at startup; continuing: {e}")

    if EXPIRY_SWEEP_SECONDS > 0:
        _stop_event.clear()
        _expiry_task = asyncio.create_task(expiry_loop(_stop_event, EXPIRY_SWEEP_SECONDS))


@app.on_event("shutdown")
async def shutdown():
    global _expiry_task
    _stop_event.set()
    if _expiry_task:
        try:
            await _expiry_task
        except Exception as e:
            print(f"[{SERVICE_NAME}] expiry sweep stopped with error: {e}")
        _expiry_task = None
    try:
        await publisher.close()
    except Exception as e:
        print(f"[{SERVICE_NAME}] RabbitMQ close failed: {e}")
