from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from synthnote.config import PipelineConfig
from synthnote.main import create_app
from synthnote.orchestrator import PipelineController
from tests.fakes import FakeCloudModel, FakeLocalModel, MemoryNoteStore, make_settings


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    return make_settings(tmp_path).pipeline_config()


@pytest.fixture
def controller_factory(pipeline_config: PipelineConfig):
    def _factory(
        *,
        local: FakeLocalModel | None = None,
        cloud: FakeCloudModel | None = None,
        sink: MemoryNoteStore | None = None,
        **kwargs,
    ):
        local = local or FakeLocalModel()
        cloud = cloud or FakeCloudModel()
        sink = sink or MemoryNoteStore()
        controller = PipelineController(pipeline_config, local=local, cloud=cloud, sink=sink, **kwargs)
        return controller, local, cloud, sink

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_local: FakeLocalModel | None = None,
        fake_cloud: FakeCloudModel | None = None,
        note_store: MemoryNoteStore | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        local = fake_local or FakeLocalModel()
        cloud = fake_cloud or FakeCloudModel()
        store = note_store or MemoryNoteStore()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            local_client=local,
            cloud_client=cloud,
            note_store=store,
            config_path=cfg_path,
        )
        return app, cfg_path, local, cloud, store

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, local, cloud, store = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_local = local  # type: ignore[attr-defined]
            http_client.fake_cloud = cloud  # type: ignore[attr-defined]
            http_client.note_store = store  # type: ignore[attr-defined]
            yield http_client
