from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatquery.config import AppSettings, DispatchConfig
from chatquery.main import create_app
from tests.fakes import FakeCompletionClient, RecordingSleep


def make_dispatch(**overrides) -> DispatchConfig:
    values = dict(
        max_concurrent_requests=3,
        slot_wait_timeout_s=5.0,
        base_delay_s=0.0,
        backoff_factor=2.0,
        max_delay_s=0.0,
        cooldown_after_calls=0,
        cooldown_s=0.0,
        rate_limit_cooldown_s=0.0,
        session_pause_s=0.0,
        notice_dedup_window_s=5.0,
    )
    values.update(overrides)
    return DispatchConfig(**values)


def make_settings(**overrides) -> AppSettings:
    settings = AppSettings(
        openai_api_key=None,
        completion_base_url="http://llm.test/v1",
        model_id="test-model",
        host="127.0.0.1",
        port=8000,
        dispatch=make_dispatch(),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_completion: FakeCompletionClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        completion = fake_completion or FakeCompletionClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            completion_factory=lambda api_key: completion,
            config_path=cfg_path,
            sleep=RecordingSleep(),
        )
        return app, cfg_path, completion

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, completion = app_factory(openai_api_key="sk-test")
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_completion = completion  # type: ignore[attr-defined]
            yield http_client
