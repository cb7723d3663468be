from typing import Iterable, Optional, Set

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Resolve the tenant from a bearer JWT (HS256, ``sub`` claim).

    The secret is read from ``app.state.settings`` on every request so the
    app can be reconfigured without rebuilding the middleware stack.
    """

    def __init__(
        self,
        app,
        exempt_paths: Optional[Iterable[str]] = None,
        exempt_prefixes: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.exempt_paths: Set[str] = set(exempt_paths or [])
        self.exempt_prefixes: Set[str] = set(exempt_prefixes or [])

    @staticmethod
    def _reject(status_code: int, detail: str) -> Response:
        return JSONResponse({"detail": detail}, status_code=status_code)

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if (
            request.method == "OPTIONS"
            or path in self.exempt_paths
            or any(path.startswith(prefix) for prefix in self.exempt_prefixes)
        ):
            return await call_next(request)

        secret = request.app.state.settings.jwt_secret
        if not secret:
            return self._reject(500, "Auth secret not configured")

        auth_header = request.headers.get("Authorization") or ""
        if not auth_header.lower().startswith("bearer "):
            return self._reject(401, "Missing bearer token")

        token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return self._reject(401, "Missing bearer token")

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError:
            return self._reject(401, "Invalid token")

        tenant_id = payload.get("sub") or payload.get("user_id")
        if not tenant_id:
            return self._reject(401, "Token missing tenant identifier")

        request.state.tenant_id = tenant_id
        request.state.email = payload.get("email")
        request.state.jwt_payload = payload
        return await call_next(request)
