from __future__ import annotations

import asyncio
from typing import Any

import httpx
from fastapi import FastAPI

from calliope_proxy.observability import setup_optional_tracing
from calliope_proxy.settings import Settings


def test_tracing_is_disabled_by_default() -> None:
    app_obj = FastAPI()
    client = httpx.AsyncClient()

    enabled = setup_optional_tracing(
        app_obj=app_obj, clients=[client], settings=Settings()
    )
    asyncio.run(client.aclose())

    assert enabled is False


def test_tracing_instruments_app_and_clients(caplog: Any) -> None:
    app_obj = FastAPI()
    client = httpx.AsyncClient()
    settings = Settings(
        observability_tracing_enabled=True,
        observability_service_name="calliope-proxy-test",
    )

    with caplog.at_level("INFO", logger="uvicorn.error"):
        enabled = setup_optional_tracing(
            app_obj=app_obj, clients=[client], settings=settings
        )
    asyncio.run(client.aclose())

    assert enabled is True
    assert any(
        "observability_tracing_enabled service=calliope-proxy-test" in record.message
        and "clients=1" in record.message
        for record in caplog.records
    )
