from __future__ import annotations

from dataclasses import dataclass
from difflib import get_close_matches
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

RERANK_CAPABILITY = "rerank"
PROVIDERS_YAML = Path(__file__).resolve().parent / "data" / "providers.yaml"


class CatalogValidationError(ValueError):
    def __init__(self, errors: list[str]):
        self.errors = errors
        message = "Catalog validation failed:\n" + "\n".join(
            f"- {item}" for item in errors
        )
        super().__init__(message)


class UnknownProviderError(LookupError):
    def __init__(self, provider: str, suggestions: list[str] | None = None):
        self.provider = provider
        self.suggestions = suggestions or []
        suffix = ""
        if self.suggestions:
            suffix = f" Known providers: {', '.join(self.suggestions)}"
        super().__init__(
            f"apiBase is required for unknown provider '{provider}'.{suffix}"
        )


class ProviderCatalogEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    display_name: str = ""
    base_url: str
    aliases: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Provider id must be non-empty.")
        return normalized

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("Provider base_url must be non-empty.")
        return normalized

    @property
    def supports_rerank(self) -> bool:
        return RERANK_CAPABILITY in {item.strip().lower() for item in self.capabilities}


@dataclass(frozen=True)
class ProviderCatalog:
    version: int
    providers: dict[str, ProviderCatalogEntry]
    alias_index: dict[str, str]

    @property
    def provider_ids(self) -> list[str]:
        return sorted(self.providers)

    def find(self, provider: str | None) -> ProviderCatalogEntry | None:
        normalized = (provider or "").strip().lower()
        if not normalized:
            return None
        canonical = self.alias_index.get(normalized, normalized)
        return self.providers.get(canonical)

    def resolve_base(self, provider: str, explicit_base: str | None = None) -> str:
        if explicit_base and explicit_base.strip():
            return explicit_base.strip().rstrip("/")

        entry = self.find(provider)
        if entry is None:
            suggestions = get_close_matches(
                (provider or "").strip().lower(),
                self.provider_ids,
                n=3,
                cutoff=0.45,
            )
            raise UnknownProviderError(provider or "unknown", suggestions=suggestions)
        return entry.base_url

    def supports_rerank(self, provider: str) -> bool:
        entry = self.find(provider)
        return entry is not None and entry.supports_rerank

    def rerank_providers(self) -> list[str]:
        return [
            provider_id
            for provider_id in self.provider_ids
            if self.providers[provider_id].supports_rerank
        ]


def _provider_items(document: dict[str, Any], source: str) -> list[dict[str, Any]]:
    raw = document.get("providers", [])
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise CatalogValidationError([f"Expected 'providers' list in {source}."])
    items: list[dict[str, Any]] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise CatalogValidationError(
                [f"Expected object at providers[{idx}] in {source}."]
            )
        items.append(item)
    return items


def build_provider_catalog(documents: list[tuple[str, dict[str, Any]]]) -> ProviderCatalog:
    """Merge provider documents in order; later entries replace earlier ids."""
    providers: dict[str, ProviderCatalogEntry] = {}
    errors: list[str] = []
    version = 1
    for source, document in documents:
        version = int(document.get("version") or version)
        for idx, item in enumerate(_provider_items(document, source)):
            try:
                entry = ProviderCatalogEntry.model_validate(item)
            except ValueError as exc:
                errors.append(f"{source} providers[{idx}]: {exc}")
                continue
            providers[entry.id] = entry
    if errors:
        raise CatalogValidationError(errors)

    alias_index: dict[str, str] = {}
    for provider_id, entry in providers.items():
        for alias in entry.aliases:
            normalized = alias.strip().lower()
            if normalized and normalized not in providers:
                alias_index[normalized] = provider_id
    return ProviderCatalog(version=version, providers=providers, alias_index=alias_index)


def _read_catalog_document(path: str | Path) -> tuple[str, dict[str, Any]]:
    with Path(path).open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}
    if not isinstance(document, dict):
        raise CatalogValidationError([f"{path}: expected a YAML mapping"])
    return str(path), document


@lru_cache
def load_internal_catalog() -> ProviderCatalog:
    return build_provider_catalog([_read_catalog_document(PROVIDERS_YAML)])


def load_provider_catalog(override_path: str | Path | None = None) -> ProviderCatalog:
    if not override_path:
        return load_internal_catalog()

    return build_provider_catalog(
        [
            _read_catalog_document(PROVIDERS_YAML),
            _read_catalog_document(override_path),
        ]
    )
