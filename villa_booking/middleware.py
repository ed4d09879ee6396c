import json
import time
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .redis_client import redis_client
from .security import verified_subject

SKIP_RATE_LIMIT = ("/docs", "/openapi.json", "/health")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            print(json.dumps({
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": 500,
                "duration_ms": round(duration_ms, 2),
            }))
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Id"] = request_id

        print(json.dumps({
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "user_sub": getattr(request.state, "user_sub", None),
            "user_roles": getattr(request.state, "user_roles", None),
        }, default=str))
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed one-minute window per caller, counted in Redis."""

    def __init__(self, app, max_per_minute: int = 120):
        super().__init__(app)
        self.max_per_minute = max_per_minute

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in SKIP_RATE_LIMIT or path.startswith("/docs/") or self.max_per_minute <= 0:
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        # unverifiable tokens count against the caller's ip
        user_sub = verified_subject(request.headers.get("Authorization"))
        identity = f"user:{user_sub}" if user_sub else f"ip:{ip}"

        epoch_minute = int(time.time() // 60)
        key = f"rl:{identity}:{epoch_minute}"

        count = await redis_client.incr(key)
        if count == 1:
            await redis_client.expire(key, 70)

        if count > self.max_per_minute:
            return JSONResponse(
                status_code=429,
                content={"success": False, "error": {"kind": "rate_limited", "message": "Too many requests"}},
            )

        return await call_next(request)
