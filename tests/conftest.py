from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from hnchat.config import AppSettings
from hnchat.conversation_manager import ConversationManager
from hnchat.conversation_store import ConversationStore
from hnchat.db import Database
from hnchat.hn_tools import default_registry
from hnchat.main import create_app
from tests.fakes import FakeLLMProvider


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        llm_base_url="http://lm.test/v1",
        llm_model="test-model",
        llm_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        step_timeout_seconds=5.0,
        execution_timeout_seconds=5.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "test.db"))
    await database.init()
    return database


@pytest.fixture
def registry(db: Database):
    return default_registry(db)


@pytest.fixture
def store(db: Database) -> ConversationStore:
    return ConversationStore(db.path)


@pytest.fixture
def manager_factory(tmp_path: Path, db: Database, registry, store: ConversationStore):
    def _factory(llm: FakeLLMProvider, tool_registry=None, **settings_overrides) -> ConversationManager:
        settings = make_settings(tmp_path, **settings_overrides)
        return ConversationManager(llm, tool_registry or registry, store, db=db, settings=settings)

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, fake_llm: FakeLLMProvider | None = None, config_path: Path | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        llm = fake_llm or FakeLLMProvider()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm=llm, config_path=cfg_path)
        return app, cfg_path, llm

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm  # type: ignore[attr-defined]
            yield http_client
