from __future__ import annotations

from typing import Any

from fastapi import status


class ClientValidationError(Exception):
    """Rejection of a malformed inbound request, rendered verbatim as JSON."""

    def __init__(
        self,
        content: dict[str, Any],
        status_code: int = status.HTTP_400_BAD_REQUEST,
    ) -> None:
        self.content = content
        self.status_code = status_code
        super().__init__(str(content.get("error") or content))
