"""Custom middleware for the application."""

import logging
import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

import redis.asyncio as redis

from sitswap.config import settings
from sitswap.core.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)

# Processor callbacks must never be throttled.
RATE_LIMIT_EXEMPT_PATHS = ("/health", "/docs", "/redoc", "/openapi.json")
RATE_LIMIT_EXEMPT_PREFIXES = (f"{settings.api_prefix}/webhooks/",)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


async def _hit_window(client: redis.Redis, key: str, now: int) -> int:
    """Record a hit in a one-minute sliding window and return the prior count."""
    async with client.pipeline(transaction=True) as pipe:
        await pipe.zremrangebyscore(key, 0, now - 60)
        await pipe.zcard(key)
        await pipe.zadd(key, {f"{now}:{uuid.uuid4().hex}": now})
        await pipe.expire(key, 60)
        results = await pipe.execute()
    return results[1]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP rate limiting using a Redis sliding window."""

    def __init__(self, app, requests_per_minute: int = 100, redis_url: str | None = None):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.redis_url = redis_url or settings.redis_url
        self._redis: redis.Redis | None = None

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in RATE_LIMIT_EXEMPT_PATHS or path.startswith(RATE_LIMIT_EXEMPT_PREFIXES):
            return await call_next(request)

        now = int(time.time())
        try:
            count = await _hit_window(await self.get_redis(), f"rate_limit:{_client_ip(request)}", now)
        except redis.RedisError as exc:
            logger.warning(f"Rate limiter unavailable, allowing request: {exc}")
            return await call_next(request)

        if count >= self.requests_per_minute:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later.", "retry_after": 60},
                headers={
                    "Retry-After": "60",
                    "X-RateLimit-Limit": str(self.requests_per_minute),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.requests_per_minute - count - 1))
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs every request with its timing."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"[{request_id}] {request.method} {request.url.path} failed")
            raise

        duration = time.perf_counter() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration:.3f}s"

        log = logger.warning if duration > 1.0 else logger.info
        log(
            f"[{request_id}] {request.method} {request.url.path} "
            f"-> {response.status_code} in {duration:.3f}s"
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to responses."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if not settings.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


class RateLimiter:
    """Per-user rate limit for individual endpoints, used as a dependency."""

    def __init__(self, requests_per_minute: int = 10, key_prefix: str = "api"):
        self.requests_per_minute = requests_per_minute
        self.key_prefix = key_prefix
        self._redis: redis.Redis | None = None

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def __call__(self, request: Request) -> None:
        if settings.environment == "development":
            return

        client_id = getattr(request.state, "user_id", None) or _client_ip(request)
        key = f"rate:{self.key_prefix}:{client_id}"
        try:
            count = await _hit_window(await self.get_redis(), key, int(time.time()))
        except redis.RedisError as exc:
            logger.warning(f"Rate limiter {self.key_prefix} unavailable: {exc}")
            return

        if count >= self.requests_per_minute:
            raise RateLimitExceeded()


booking_limiter = RateLimiter(requests_per_minute=10, key_prefix="booking")
payment_limiter = RateLimiter(requests_per_minute=10, key_prefix="payment")
