import httpx
import pytest
from fastapi.testclient import TestClient

from services.relay.app.config import RelaySettings
from services.relay.app.main import create_app
from services.relay.tests.mock_upstream import relay_settings


@pytest.fixture
def settings() -> RelaySettings:
    return relay_settings()


@pytest.fixture
def make_client():
    """Build a TestClient whose upstream calls go to ``handler`` via httpx.MockTransport."""

    def _make(handler, **overrides) -> TestClient:
        app = create_app(
            settings=relay_settings(**overrides),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        # Host header must pass TrustedHostMiddleware
        return TestClient(app, base_url="http://localhost")

    return _make
