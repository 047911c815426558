"""Bearer credential resolution for the REST API and the streaming channel."""
from __future__ import annotations

from typing import Optional

from fastapi import Request, WebSocket
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .database import Database
from .errors import Unauthorized
from .models import Identity


class APIKeyAuth:
    """Exchange an API key for the caller's identity and capabilities."""

    def __init__(self, database: Database):
        self._database = database
        self._bearer = HTTPBearer(auto_error=False)

    def resolve(self, token: Optional[str]) -> Identity:
        cleaned = (token or "").strip()
        if not cleaned:
            raise Unauthorized("Missing bearer token")
        user = self._database.get_user_by_api_key(cleaned)
        if user is None:
            raise Unauthorized("Invalid API key")
        return user.identity()

    async def __call__(self, request: Request) -> Identity:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise Unauthorized("Missing bearer token")
        return self.resolve(credentials.credentials)

    def authenticate_websocket(self, websocket: WebSocket) -> Identity:
        """Resolve the handshake credential from the header or the ``access_token`` query parameter."""

        header = websocket.headers.get("authorization")
        if header:
            parts = header.strip().split(" ", 1)
            if len(parts) != 2 or parts[0].lower() != "bearer":
                raise Unauthorized("Malformed authorization header")
            return self.resolve(parts[1])
        return self.resolve(websocket.query_params.get("access_token"))


__all__ = ["APIKeyAuth"]
