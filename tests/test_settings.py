import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from jarvis.config import AgentSettings, load_settings, normalize_model_id, normalize_voice_id


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("models/Gemini-2.5-Pro", "gemini-2.5-pro"),
        ("  gemini-2.0-flash ", "gemini-2.0-flash"),
        ("gpt-4o", "gemini-2.5-flash"),
        ("gemini-1.5-pro-latest", "gemini-2.5-flash"),
        ("", "gemini-2.5-flash"),
        (None, "gemini-2.5-flash"),
        ("models/", "gemini-2.5-flash"),
    ],
)
def test_normalize_model_id(raw, expected):
    assert normalize_model_id(raw) == expected


def test_voice_aliases_collapse_to_provider_default():
    assert normalize_voice_id(" Natural ") == ""
    assert normalize_voice_id("DEFAULT") == ""
    assert normalize_voice_id(" abc123 ") == "abc123"


def test_agent_settings_normalize_on_write():
    settings = AgentSettings()
    settings.model = "models/GEMINI-2.5-PRO"
    assert settings.model == "gemini-2.5-pro"
    merged = settings.merged({"secondaryModel": "gpt-4", "voice": "natural", "speechRate": 1.5, "bogus": 1})
    assert merged.secondary_model == "gemini-2.5-flash"
    assert merged.voice == ""
    assert merged.speech_rate == 1.5
    assert merged.image_model == "imagen-3.0-generate"
    assert merged.to_public_dict()["dualModelPreview"] is False


@pytest.mark.asyncio
async def test_get_settings_masks_keys(app_factory):
    app, _, _, _ = app_factory(tavily_api_key="secret-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["tavily_api_key"] == "********"
            assert data["settings"]["gemini_api_key"] == "********"
            assert data["agent"]["model"] == "gemini-2.5-flash"


@pytest.mark.asyncio
async def test_post_settings_normalizes_and_persists(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            db = app.state.db
            before = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            res = await client.post("/settings", json={"agent": {"model": "models/Gemini-2.5-Pro", "voice": "Default"}})
            assert res.status_code == 200
            assert res.json()["agent"]["model"] == "gemini-2.5-pro"
            after = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            assert after["cnt"] == before["cnt"] + 1
            assert app.state.settings.agent.voice == ""
            bad = await client.post("/settings", json=["nope"])
            assert bad.status_code == 400

    saved = json.loads(config_path.read_text())
    assert saved["agent"]["model"] == "gemini-2.5-pro"


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"database_path": "config.db", "agent": {"model": "gemini-2.5-pro"}}))
    monkeypatch.setenv("DATABASE_PATH", "env.db")
    monkeypatch.setenv("GEMINI_MODEL", "gemini-2.0-flash")
    monkeypatch.delenv("JARVIS_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.database_path == "config.db"
    assert settings.agent.model == "gemini-2.5-pro"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"database_path": "config.db", "agent": {"model": "gemini-2.5-pro"}}))
    monkeypatch.setenv("DATABASE_PATH", "env.db")
    monkeypatch.setenv("GEMINI_MODEL", "models/gemini-2.0-flash")
    monkeypatch.setenv("JARVIS_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.database_path == "env.db"
    assert settings.agent.model == "gemini-2.0-flash"


def test_missing_secret_in_config_falls_back_to_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gemini_api_key": None}))
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    monkeypatch.delenv("JARVIS_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.gemini_api_key == "env-key"
