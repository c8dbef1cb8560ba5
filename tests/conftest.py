from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from jarvis.config import AgentSettings, AppSettings
from jarvis.main import create_app
from tests.fakes import FakeGeminiClient, FakeSearchClient, FakeSpeechClient, ScaledClock


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    agent_overrides = overrides.pop("agent", {})
    settings = AppSettings(
        gemini_api_key="gemini-key",
        elevenlabs_api_key="eleven-key",
        tavily_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        agent=AgentSettings().merged(agent_overrides),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_gemini: FakeGeminiClient | None = None,
        fake_tts: FakeSpeechClient | None = None,
        fake_search: FakeSearchClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        gemini_client = fake_gemini or FakeGeminiClient()
        tts_client = fake_tts or FakeSpeechClient()
        search_client = fake_search or FakeSearchClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            gemini_client=gemini_client,
            tts_client=tts_client,
            search_client=search_client,
            clock=ScaledClock(),
            config_path=cfg_path,
        )
        return app, cfg_path, gemini_client, tts_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, gemini_client, tts_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_gemini = gemini_client  # type: ignore[attr-defined]
            http_client.fake_tts = tts_client  # type: ignore[attr-defined]
            yield http_client
