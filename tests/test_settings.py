import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from neonchat.config import AppSettings, load_settings, save_settings
from tests.fakes import login


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    for key in ("GATEWAY_BASE_URL", "GATEWAY_API_KEY", "LOVABLE_API_KEY", "NEONCHAT_ENV_OVERRIDES_CONFIG"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gateway_base_url": "http://config"}))
    monkeypatch.setenv("GATEWAY_BASE_URL", "http://env")
    settings = load_settings(config_path=config_path)
    assert settings.gateway_base_url == "http://config"


def test_env_override_when_neonchat_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gateway_base_url": "http://config"}))
    monkeypatch.setenv("GATEWAY_BASE_URL", "http://env")
    monkeypatch.setenv("NEONCHAT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.gateway_base_url == "http://env"


def test_masked_key_in_config_falls_back_to_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    save_settings(AppSettings(**AppSettings(gateway_api_key="real").to_safe_dict()), config_path)
    assert json.loads(config_path.read_text())["gateway_api_key"] == "********"
    monkeypatch.setenv("GATEWAY_API_KEY", "from-env")
    assert load_settings(config_path=config_path).gateway_api_key == "from-env"


def test_lovable_api_key_alias(tmp_path, monkeypatch):
    monkeypatch.setenv("LOVABLE_API_KEY", "lovable-key")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.gateway_api_key == "lovable-key"


def test_to_safe_dict_masks_key():
    assert AppSettings(gateway_api_key="secret").to_safe_dict()["gateway_api_key"] == "********"
    assert AppSettings().to_safe_dict()["gateway_api_key"] is None


@pytest.mark.asyncio
async def test_user_settings_require_auth_and_clamp(app_factory):
    app, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/api/settings")
            assert res.status_code == 401

            headers = await login(app)
            res = await client.get("/api/settings", headers=headers)
            assert res.status_code == 200
            assert res.json()["settings"]["temperature_preference"] == 0.7

            res = await client.put(
                "/api/settings",
                json={"temperature_preference": 1.9, "personality_prompt": "Be playful."},
                headers=headers,
            )
            assert res.status_code == 200
            data = res.json()["settings"]
            assert data["temperature_preference"] == 1.2
            assert data["personality_prompt"] == "Be playful."
            assert data["response_style"] == "balanced"

            res = await client.put("/api/settings", json={"personality_prompt": None}, headers=headers)
            assert res.json()["settings"]["personality_prompt"] is None
            assert res.json()["settings"]["temperature_preference"] == 1.2
