from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

MODEL_IDENTIFIER_FORMAT = "{ownerSlug}/{packageSlug}/{provider}/{model}"

ModelIdentifierErrorKind = Literal["invalid_type", "invalid_format", "empty_segment"]


class ModelIdentifierError(ValueError):
    def __init__(self, kind: ModelIdentifierErrorKind, message: str):
        self.kind = kind
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class ModelIdentifier:
    owner_slug: str
    package_slug: str
    provider: str
    model_name: str

    def __str__(self) -> str:
        return "/".join(
            (self.owner_slug, self.package_slug, self.provider, self.model_name)
        )


def parse_model_identifier(value: Any) -> ModelIdentifier:
    """Split a compound model string into its four routing segments.

    Model names that themselves contain ``/`` are not supported: they produce
    more than four parts and are rejected as ``invalid_format``.
    """
    if not isinstance(value, str) or not value:
        raise ModelIdentifierError(
            "invalid_type",
            "Model string is null, undefined, or not a string.",
        )

    parts = value.split("/")
    if len(parts) != 4:
        msg = (
            f'Invalid model string format. Expected "{MODEL_IDENTIFIER_FORMAT}", '
            f'but got "{value}". Parts found: {len(parts)}'
        )
        raise ModelIdentifierError("invalid_format", msg)

    owner_slug, package_slug, provider, model_name = parts
    if not all(parts):
        msg = (
            "One or more parts of the model string are empty. Received: "
            f"ownerSlug='{owner_slug}', packageSlug='{package_slug}', "
            f"provider='{provider}', modelName='{model_name}'"
        )
        raise ModelIdentifierError("empty_segment", msg)

    return ModelIdentifier(
        owner_slug=owner_slug,
        package_slug=package_slug,
        provider=provider,
        model_name=model_name,
    )
