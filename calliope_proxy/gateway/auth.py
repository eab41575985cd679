from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

CLIENT_HEADER_SET = ("key", "timestamp", "v", "extensionversion", "os", "uniqueid")
BEARER_PREFIX = "Bearer "


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


class HeaderSetAuthenticator:
    """Presence check for the client header set sent by the editor extension."""

    def __init__(self, required_headers: Sequence[str] = CLIENT_HEADER_SET) -> None:
        self.required_headers = tuple(name.lower() for name in required_headers)

    def missing_headers(self, request: Request) -> list[str]:
        return [name for name in self.required_headers if not request.headers.get(name)]

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        missing = self.missing_headers(request)
        if missing:
            return _unauthorized(
                f"Unauthorized: Missing required headers: {', '.join(missing)}"
            )
        request.state.auth = AuthResult(
            method="header_set",
            principal=request.headers.get("uniqueid", ""),
        )
        return None


class BearerAuthenticator:
    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith(BEARER_PREFIX):
            return _unauthorized(
                "Unauthorized: Missing or invalid Bearer token in Authorization header."
            )

        token = auth_header[len(BEARER_PREFIX) :]
        if not token.strip():
            return _unauthorized("Unauthorized: Bearer token is empty.")

        request.state.auth = AuthResult(method="bearer", principal="bearer-client")
        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": message},
    )
