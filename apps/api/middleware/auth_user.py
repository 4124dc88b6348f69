"""
User identity middleware.

Authentication happens upstream (reverse proxy / identity provider); the
proxy forwards the authenticated user's id in the X-User-Id header. This
middleware rejects API requests without it and exposes the id on
request.state for route dependencies.
"""
import structlog
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger()

USER_HEADER = "X-User-Id"
PUBLIC_PATHS = ("/", "/health", "/metrics", "/docs", "/redoc", "/openapi.json")


class UserIdentityMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = USER_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        user_id = (request.headers.get(self.header_name) or "").strip()
        if not user_id:
            logger.warning("request_missing_user", path=request.url.path)
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": f"Missing {self.header_name} header"},
            )

        request.state.user_id = user_id
        return await call_next(request)


def get_current_user_id(request: Request) -> str:
    """Route dependency returning the authenticated user's id"""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user_id
