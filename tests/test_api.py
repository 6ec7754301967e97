import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from synthnote.errors import NetworkError, PersistenceError
from synthnote.main import create_app
from tests.fakes import FakeCloudModel, MemoryNoteStore, make_settings


@pytest.mark.asyncio
async def test_query_to_saved_note_over_http(client):
    controller = client.app.state.controller

    resp = await client.post("/session/query", json={"text": "why is the sky blue"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["query"]["seq"] == 1
    assert body["session"]["state"] == "AwaitingProposals"
    await controller.settle()

    resp = await client.get("/session")
    assert resp.status_code == 200
    session = resp.json()
    assert session["state"] == "ProposalsReady"
    assert [p["id"] for p in session["proposals"]["proposals"]] == [0, 1, 2]

    resp = await client.post("/session/select", json={"proposal_id": 1})
    assert resp.status_code == 200
    assert resp.json()["session"]["state"] == "AwaitingSynthesis"
    await controller.settle()
    assert client.fake_cloud.calls[0]["proposal"] == "Second angle"

    session = (await client.get("/session")).json()
    assert session["state"] == "SynthesisReady"
    assert session["synthesis"]["body"] == "Synthesized body."

    resp = await client.post("/session/save")
    assert resp.status_code == 200
    body = resp.json()
    assert body["session"]["state"] == "Idle"
    note, _ = client.note_store.saved[0]
    assert body["note"]["note_id"] == note.note_id
    assert note.title == "Why is the sky blue"


@pytest.mark.asyncio
async def test_blank_query_is_bad_request(client):
    resp = await client.post("/session/query", json={"text": "   "})
    assert resp.status_code == 400
    assert resp.json()["error"]["kind"] == "InvalidInput"
    assert (await client.get("/session")).json()["state"] == "Idle"


@pytest.mark.asyncio
async def test_select_without_proposals_is_conflict(client):
    resp = await client.post("/session/select", json={"proposal_id": 0})
    assert resp.status_code == 409
    assert resp.json()["error"]["kind"] == "InvalidState"


@pytest.mark.asyncio
async def test_unknown_proposal_is_not_found(client):
    await client.post("/session/query", json={"text": "why is the sky blue"})
    await client.app.state.controller.settle()
    resp = await client.post("/session/select", json={"proposal_id": 7})
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "InvalidInput"
    assert (await client.get("/session")).json()["state"] == "ProposalsReady"


@pytest.mark.asyncio
async def test_cancel_and_discard_routes(client):
    controller = client.app.state.controller
    resp = await client.post("/session/cancel")
    assert resp.status_code == 200
    assert resp.json()["session"]["state"] == "Idle"

    await client.post("/session/query", json={"text": "why is the sky blue"})
    await controller.settle()
    await client.post("/session/select", json={"proposal_id": 0})
    await controller.settle()

    resp = await client.post("/session/cancel")
    assert resp.status_code == 409
    resp = await client.post("/session/discard")
    assert resp.status_code == 200
    assert resp.json()["session"]["state"] == "Idle"
    assert client.note_store.saved == []


@pytest.mark.asyncio
async def test_failed_synthesis_can_be_retried_over_http(app_factory):
    cloud = FakeCloudModel(outcomes=[NetworkError("provider down")])
    app, _, _, _, _ = app_factory(fake_cloud=cloud)
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            controller = app.state.controller
            await http_client.post("/session/query", json={"text": "why is the sky blue"})
            await controller.settle()
            await http_client.post("/session/select", json={"proposal_id": 0})
            await controller.settle()

            session = (await http_client.get("/session")).json()
            assert session["state"] == "ProposalsReady"
            assert session["last_error"]["kind"] == "NetworkError"
            assert session["retry_available"] is True

            resp = await http_client.post("/session/retry")
            assert resp.status_code == 200
            await controller.settle()
            assert (await http_client.get("/session")).json()["state"] == "SynthesisReady"


@pytest.mark.asyncio
async def test_save_failure_keeps_synthesis(app_factory):
    store = MemoryNoteStore(fail_with=PersistenceError("disk full"))
    app, _, _, _, _ = app_factory(note_store=store)
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            controller = app.state.controller
            await http_client.post("/session/query", json={"text": "why is the sky blue"})
            await controller.settle()
            await http_client.post("/session/select", json={"proposal_id": 0})
            await controller.settle()

            resp = await http_client.post("/session/save")
            assert resp.status_code == 500
            assert resp.json()["error"] == {"kind": "PersistenceError", "message": "disk full"}
            session = (await http_client.get("/session")).json()
            assert session["state"] == "SynthesisReady"
            assert session["last_error"]["kind"] == "PersistenceError"


@pytest.mark.asyncio
async def test_retry_with_nothing_failed_is_conflict(client):
    resp = await client.post("/session/retry")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_models_route_lists_both_sides(client):
    resp = await client.get("/models")
    assert resp.status_code == 200
    body = resp.json()
    assert body["local"] == ["test-local"]
    assert body["cloud"][0]["id"] == "test/cloud-model"
    assert body["errors"] == {}


@pytest.mark.asyncio
async def test_default_clients_follow_pipeline_config(tmp_path):
    settings = make_settings(tmp_path, api_key_prefix="sk-x-", proposal_count=2, local_provider="ollama")
    app = create_app(settings, note_store=MemoryNoteStore(), config_path=tmp_path / "config.json")
    async with LifespanManager(app):
        config = app.state.controller.config
        assert app.state.cloud_client.api_key_prefix == config.api_key_prefix == "sk-x-"
        assert app.state.local_client.proposal_count == config.proposal_count == 2
        assert app.state.local_client.provider == config.local_provider == "ollama"
