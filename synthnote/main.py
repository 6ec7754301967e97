import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .cloud import CloudModelClient
from .config import CONFIG_PATH, AppSettings, PipelineConfig, load_settings, save_settings
from .errors import InvalidInput, PipelineError, UnknownProposal
from .llm import LocalModelClient
from .note_store import MarkdownNoteStore
from .orchestrator import PipelineController
from .schemas import SelectProposalRequest, SubmitQueryRequest
from .session import SessionBus


logger = logging.getLogger("uvicorn.error")

ERROR_STATUS = {
    "InvalidInput": 400,
    "InvalidState": 409,
    "AuthError": 401,
    "Timeout": 504,
    "NetworkError": 502,
    "ModelError": 502,
    "PersistenceError": 500,
}

router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_session(request: Request) -> SessionBus:
    return request.app.state.session


def get_local_client(request: Request) -> LocalModelClient:
    return request.app.state.local_client


def get_cloud_client(request: Request) -> CloudModelClient:
    return request.app.state.cloud_client


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_model_check(request: Request) -> Dict[str, Any]:
    return request.app.state.model_check


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def error_body(exc: PipelineError) -> Dict[str, Any]:
    return {"kind": exc.kind, "message": exc.message}


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status = 404 if isinstance(exc, UnknownProposal) else ERROR_STATUS.get(exc.kind, 500)
    return JSONResponse(status_code=status, content={"error": error_body(exc)})


def _model_entry(model_id: str, available: List[str]) -> Dict[str, Any]:
    if model_id in available:
        return {"ok": True, "missing": [], "available": available}
    # Ollama lists untagged pulls as "<name>:latest".
    if f"{model_id}:latest" in available:
        return {"ok": True, "missing": [], "available": available, "resolved": f"{model_id}:latest"}
    return {"ok": False, "missing": [model_id], "available": available}


async def refresh_model_check(
    config: PipelineConfig,
    local_client: LocalModelClient,
    cloud_client: CloudModelClient,
) -> Dict[str, Any]:
    """Check that the configured local and cloud models are offered by their endpoints."""
    checks: Dict[str, Any] = {}
    try:
        local_ids = await local_client.list_models(config.local)
    except PipelineError as exc:
        checks["local"] = {"ok": False, "error": error_body(exc), "available": []}
    else:
        checks["local"] = _model_entry(config.local.model_id, local_ids)
    try:
        cloud_models = await cloud_client.list_models(config.cloud, config.cloud_api_key)
    except PipelineError as exc:
        checks["cloud"] = {"ok": False, "error": error_body(exc), "available": []}
    else:
        checks["cloud"] = _model_entry(config.cloud.model_id, [m["id"] for m in cloud_models])
    return checks


def _session_payload(session: SessionBus) -> Dict[str, Any]:
    return session.snapshot().model_dump(mode="json")


@router.get("/session")
async def get_session_state(session: SessionBus = Depends(get_session)):
    return _session_payload(session)


@router.post("/session/query")
async def submit_query(req: SubmitQueryRequest, session: SessionBus = Depends(get_session)):
    handle = session.submit(req.text)
    return {"query": handle.query.model_dump(mode="json"), "session": _session_payload(session)}


@router.post("/session/select")
async def select_proposal(req: SelectProposalRequest, session: SessionBus = Depends(get_session)):
    session.select(req.proposal_id)
    return {"session": _session_payload(session)}


@router.post("/session/cancel")
async def cancel_request(session: SessionBus = Depends(get_session)):
    session.cancel()
    return {"session": _session_payload(session)}


@router.post("/session/retry")
async def retry_request(session: SessionBus = Depends(get_session)):
    session.retry()
    return {"session": _session_payload(session)}


@router.post("/session/save")
async def save_note(session: SessionBus = Depends(get_session)):
    stored = await session.save()
    return {"note": stored.model_dump(mode="json"), "session": _session_payload(session)}


@router.post("/session/discard")
async def discard_synthesis(session: SessionBus = Depends(get_session)):
    session.discard()
    return {"session": _session_payload(session)}


@router.get("/session/events")
async def stream_session_events(session: SessionBus = Depends(get_session)):
    async def event_generator():
        queue = session.subscribe()
        try:
            while True:
                snapshot = await queue.get()
                yield sse_format(snapshot.model_dump(mode="json"))
        except asyncio.CancelledError:
            pass
        finally:
            session.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/settings")
async def get_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    local_client: LocalModelClient = Depends(get_local_client),
    cloud_client: CloudModelClient = Depends(get_cloud_client),
    model_check: Dict[str, Any] = Depends(get_model_check),
):
    if not model_check:
        request.app.state.model_check = await refresh_model_check(
            settings.pipeline_config(), local_client, cloud_client
        )
    return {
        "settings": settings.to_safe_dict(),
        "issues": settings.readiness_issues(),
        "model_check": request.app.state.model_check,
    }


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    local_client: LocalModelClient = Depends(get_local_client),
    cloud_client: CloudModelClient = Depends(get_cloud_client),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise InvalidInput("Settings update must be a JSON object.")
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    request.app.state.model_check = await refresh_model_check(
        new_settings.pipeline_config(), local_client, cloud_client
    )
    # The running pipeline keeps the configuration it was built with.
    return {
        "settings": new_settings.to_safe_dict(),
        "issues": new_settings.readiness_issues(),
        "model_check": request.app.state.model_check,
        "restart_required": True,
    }


@router.get("/models")
async def list_models_route(
    request: Request,
    local_client: LocalModelClient = Depends(get_local_client),
    cloud_client: CloudModelClient = Depends(get_cloud_client),
):
    config = request.app.state.controller.config
    result: Dict[str, Any] = {"local": [], "cloud": [], "errors": {}}
    try:
        result["local"] = await local_client.list_models(config.local)
    except PipelineError as exc:
        result["errors"]["local"] = error_body(exc)
    try:
        result["cloud"] = await cloud_client.list_models(config.cloud, config.cloud_api_key)
    except PipelineError as exc:
        result["errors"]["cloud"] = error_body(exc)
    return result


def create_app(
    settings: AppSettings,
    *,
    local_client: Optional[LocalModelClient] = None,
    cloud_client: Optional[CloudModelClient] = None,
    note_store: Optional[MarkdownNoteStore] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        issues = app.state.settings.readiness_issues()
        if issues:
            logger.warning("SynthNote is not fully configured: %s", "; ".join(issues))
        try:
            yield
        finally:
            app.state.session.close()
            await app.state.controller.aclose()
            await app.state.local_client.close()
            await app.state.cloud_client.close()

    app = FastAPI(title="SynthNote", lifespan=lifespan)
    config = settings.pipeline_config()
    app.state.settings = settings
    app.state.local_client = local_client or LocalModelClient(
        provider=config.local_provider, proposal_count=config.proposal_count
    )
    app.state.cloud_client = cloud_client or CloudModelClient(api_key_prefix=config.api_key_prefix)
    app.state.note_store = note_store or MarkdownNoteStore(config.notes_dir)
    app.state.model_check = {}
    app.state.controller = PipelineController(
        config,
        local=app.state.local_client,
        cloud=app.state.cloud_client,
        sink=app.state.note_store,
    )
    app.state.session = SessionBus(app.state.controller)
    app.state.config_path = config_path or CONFIG_PATH

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("SYNTHNOTE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "synthnote.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
