from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from neonchat.config import AppSettings
from neonchat.main import create_app
from tests.fakes import FakeGatewayClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        gateway_base_url="http://gateway.test/v1",
        gateway_api_key="test-key",
        chat_model="test-chat",
        search_model="test-search",
        memory_model="test-memory",
        semantic_search_url=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, fake_gateway: FakeGatewayClient | None = None, semantic=None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        gateway = fake_gateway or FakeGatewayClient()
        app = create_app(settings, gateway=gateway, semantic=semantic)
        return app, gateway

    return _factory


@pytest.fixture
async def client(app_factory):
    app, gateway = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_gateway = gateway  # type: ignore[attr-defined]
            yield http_client

