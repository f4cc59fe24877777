from fastapi.testclient import TestClient

from src.main import app


def test_health_and_root():
    client = TestClient(app)

    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json() == {"status": "ok", "service": "crm-integrations"}


def test_request_id_is_echoed_or_generated():
    client = TestClient(app)

    echoed = client.get("/health", headers={"X-Request-ID": "req-123"})
    correlated = client.get("/health", headers={"X-Correlation-ID": "corr-9"})
    generated = client.get("/health")

    assert echoed.headers["X-Request-ID"] == "req-123"
    assert correlated.headers["X-Request-ID"] == "corr-9"
    assert len(generated.headers["X-Request-ID"]) == 36
