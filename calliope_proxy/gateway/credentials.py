from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger("uvicorn.error")

ENV_LOCATION_PREFIX = "env:"

CredentialFailureReason = Literal[
    "missing_location",
    "unsupported_format",
    "variable_not_found",
]


@dataclass(frozen=True, slots=True)
class CredentialLookup:
    value: str | None
    reason: CredentialFailureReason | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def lookup_api_key(
    location: str | None,
    environ: Mapping[str, str] | None = None,
) -> CredentialLookup:
    if not location:
        return CredentialLookup(value=None, reason="missing_location")

    if not location.startswith(ENV_LOCATION_PREFIX):
        return CredentialLookup(value=None, reason="unsupported_format")

    source = os.environ if environ is None else environ
    variable_name = location[len(ENV_LOCATION_PREFIX) :]
    value = source.get(variable_name) if variable_name else None
    if not value:
        return CredentialLookup(value=None, reason="variable_not_found")
    return CredentialLookup(value=value)


def resolve_api_key(
    location: str | None,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    lookup = lookup_api_key(location, environ)
    if lookup.ok:
        return lookup.value

    if lookup.reason == "missing_location":
        logger.error("api_key_resolution_failed reason=missing_location")
    elif lookup.reason == "unsupported_format":
        logger.error(
            "api_key_resolution_failed reason=unsupported_format location=%s",
            location,
        )
    else:
        logger.error(
            "api_key_resolution_failed reason=variable_not_found variable=%s",
            (location or "")[len(ENV_LOCATION_PREFIX) :],
        )
    return None
