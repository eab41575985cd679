from __future__ import annotations

from typing import Any

from tests.client_test_utils import BEARER_HEADERS, CLIENT_HEADERS, build_test_client


def test_health_requires_no_auth(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"message": "Server is running and healthy!"}


def test_model_proxy_rejects_missing_bearer(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post("/model-proxy/v1/chat/completions", json={})

    assert response.status_code == 401
    assert response.json() == {
        "error": "Unauthorized: Missing or invalid Bearer token in Authorization header."
    }


def test_model_proxy_rejects_non_bearer_scheme(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/model-proxy/v1/embeddings",
            headers={"Authorization": "Basic dXNlcjpwYXNz"},
            json={},
        )

    assert response.status_code == 401


def test_model_proxy_rejects_empty_bearer_token(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/model-proxy/v1/chat/completions",
            headers={"Authorization": "Bearer "},
            json={},
        )

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized: Bearer token is empty."}


def test_bearer_token_reaches_validation(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/model-proxy/v1/chat/completions", headers=BEARER_HEADERS, json={}
        )

    assert response.status_code == 400
    assert response.json() == {"error": "Missing required parameter: model"}


def test_analytics_requires_bearer(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/proxy/analytics/ws-1/capture",
            json={"event": "opened", "uniqueId": "u-1"},
        )

    assert response.status_code == 401


def test_web_lists_every_missing_client_header(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/web",
            headers={"key": "k", "os": "linux"},
            json={"query": "test"},
        )

    assert response.status_code == 401
    assert response.json() == {
        "error": (
            "Unauthorized: Missing required headers: "
            "timestamp, v, extensionversion, uniqueid"
        )
    }


def test_header_names_are_case_insensitive(monkeypatch: Any) -> None:
    upper_headers = {name.upper(): value for name, value in CLIENT_HEADERS.items()}
    with build_test_client(monkeypatch) as client:
        response = client.post("/api/crawl", headers=upper_headers, json={})

    assert response.status_code == 400
    assert response.json() == {"error": "Missing required parameter: startUrl"}


def test_crawl_requires_client_headers(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post("/crawl", headers=BEARER_HEADERS, json={})

    assert response.status_code == 401
    assert "Missing required headers" in response.json()["error"]
