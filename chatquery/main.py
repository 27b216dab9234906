import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response, StreamingResponse

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .errors import InputInvalid
from .export import EXPORT_FILENAME, filter_results, results_to_csv
from .ingest import parse_chat_csv, parse_query_csv
from .orchestrator import (
    CompletionFactory,
    EventBus,
    Processor,
    completion_factory_from_settings,
    new_run_id,
    results_to_rows,
    validate_inputs,
)
from .scheduler import SleepFn
from .schemas import Notice, RunSummary, SessionResult

logger = logging.getLogger("uvicorn.error")

MASKED_KEY = "********"


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_processor(request: Request) -> Processor:
    return request.app.state.processor


def get_runs(request: Request) -> Dict[str, RunSummary]:
    return request.app.state.runs


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def read_upload_text(file: UploadFile) -> str:
    raw = await file.read()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def get_run_or_404(runs: Dict[str, RunSummary], run_id: str) -> RunSummary:
    summary = runs.get(run_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return summary


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    processor: Processor = Depends(get_processor),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    if body.get("openai_api_key") == MASKED_KEY:
        body.pop("openai_api_key")
    current = settings.model_dump()
    for section in ("dispatch", "prompt"):
        if isinstance(body.get(section), dict):
            body[section] = {**current[section], **body[section]}
    new_settings = AppSettings(**{**current, **body})
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    processor.settings = new_settings
    if not request.app.state.custom_completion_factory:
        processor.completion_factory = completion_factory_from_settings(new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/status")
async def get_status(processor: Processor = Depends(get_processor)):
    return {"is_processing": processor.is_processing}


@router.post("/api/process")
async def start_processing(
    chat_file: UploadFile = File(...),
    query_file: UploadFile = File(...),
    api_key: Optional[str] = Form(None),
    settings: AppSettings = Depends(get_settings),
    bus: EventBus = Depends(get_event_bus),
    processor: Processor = Depends(get_processor),
    runs: Dict[str, RunSummary] = Depends(get_runs),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
):
    if processor.is_processing or run_tasks:
        raise HTTPException(status_code=409, detail="A run is already processing.")
    try:
        messages = parse_chat_csv(await read_upload_text(chat_file))
        queries = parse_query_csv(await read_upload_text(query_file))
        key = (api_key or "").strip() or settings.openai_api_key
        validate_inputs(messages, queries, key)
    except InputInvalid as exc:
        raise HTTPException(status_code=400, detail=exc.message)

    run_id = new_run_id()
    session_count = len({m.session_id for m in messages})
    summary = RunSummary(run_id=run_id, session_count=session_count, query_count=len(queries))
    runs[run_id] = summary
    await bus.emit(run_id, "run_started", {"sessions": session_count, "queries": len(queries)})

    async def on_notice(notice: Notice) -> None:
        if notice.level == "error":
            summary.error = notice.text
        await bus.emit(run_id, "notice", notice.model_dump())

    async def on_session_done(result: SessionResult) -> None:
        await bus.emit(run_id, "session_completed", {"session_id": result.session_id})

    async def run_and_record() -> None:
        try:
            results = await processor.process(
                messages,
                queries,
                key,
                on_notice=on_notice,
                on_session_done=on_session_done,
            )
            if results is None:
                summary.status = "failed"
                summary.error = summary.error or "Error processing data"
                await bus.emit(run_id, "run_failed", {"error": summary.error})
            else:
                summary.results = results_to_rows(results)
                summary.status = "completed"
                await bus.emit(run_id, "run_completed", {"sessions": len(results)})
            logger.info("Run %s finished: %s", run_id, summary.status)
        finally:
            run_tasks.pop(run_id, None)

    run_tasks[run_id] = asyncio.create_task(run_and_record())
    return {"run_id": run_id}


@router.get("/api/runs/{run_id}")
async def get_run(run_id: str, q: str = "", runs: Dict[str, RunSummary] = Depends(get_runs)):
    summary = get_run_or_404(runs, run_id)
    data = summary.model_dump()
    data["results"] = filter_results(summary.results, q)
    return data


@router.get("/api/runs/{run_id}/export")
async def export_run(run_id: str, q: str = "", runs: Dict[str, RunSummary] = Depends(get_runs)):
    summary = get_run_or_404(runs, run_id)
    if summary.status == "running":
        raise HTTPException(status_code=409, detail="Run is still processing.")
    content = results_to_csv(filter_results(summary.results, q))
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
    )


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/runs/{run_id}/events")
async def stream_events(run_id: str, bus: EventBus = Depends(get_event_bus)):
    # Replay past events then stream new ones
    async def event_generator():
        queue = await bus.subscribe(run_id)
        try:
            for ev in bus.list_events(run_id):
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    completion_factory: Optional[CompletionFactory] = None,
    config_path: Optional[Path] = None,
    sleep: SleepFn = asyncio.sleep,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            for task in list(app.state.run_tasks.values()):
                task.cancel()

    app = FastAPI(title="Chat Session Query Processor", lifespan=lifespan)
    app.state.settings = settings
    app.state.bus = EventBus()
    app.state.processor = Processor(settings, completion_factory=completion_factory, sleep=sleep)
    app.state.custom_completion_factory = completion_factory is not None
    app.state.runs = {}
    app.state.run_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CHATQUERY_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "chatquery.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
