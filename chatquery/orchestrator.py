import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import AppSettings
from .errors import InputInvalid
from .grouping import group_by_session
from .llm import CompletionClient
from .scheduler import DispatchScheduler, NoticeCallback, SessionCallback, SleepFn
from .schemas import RESERVED_COLUMNS, Message, Notice, Query, SessionResult

logger = logging.getLogger("uvicorn.error")

CompletionFactory = Callable[[str], CompletionClient]


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_run_id() -> str:
    return str(uuid.uuid4())


def validate_inputs(messages: Sequence[Message], queries: Sequence[Query], api_key: Optional[str]) -> None:
    if not messages or not queries or not (api_key or "").strip():
        raise InputInvalid("Please provide all required inputs before processing")
    seen = set()
    for query in queries:
        if query.query_name in RESERVED_COLUMNS:
            raise InputInvalid(f"Query name is reserved for a result column: {query.query_name}")
        if query.query_name in seen:
            raise InputInvalid(f"Duplicate query name: {query.query_name}")
        seen.add(query.query_name)


def completion_factory_from_settings(settings: AppSettings) -> CompletionFactory:
    def _factory(api_key: str) -> CompletionClient:
        return CompletionClient(
            api_key,
            base_url=settings.completion_base_url,
            model=settings.model_id,
            temperature=settings.prompt.temperature,
            max_tokens=settings.prompt.max_tokens,
            max_content_chars=settings.prompt.max_content_chars,
            max_transcript_chars=settings.prompt.max_transcript_chars,
            timeout=settings.request_timeout_s,
        )

    return _factory


class EventBus:
    """In-memory fan-out for SSE, with per-run history for replay."""

    def __init__(self) -> None:
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.history: Dict[str, List[dict]] = {}
        self.lock = asyncio.Lock()
        self._seq = 0

    async def emit(self, run_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("run_id", run_id)
        async with self.lock:
            self._seq += 1
            stored = {
                "seq": self._seq,
                "event_type": event_type,
                "payload": safe_payload,
                "created_at": utc_iso(),
            }
            self.history.setdefault(run_id, []).append(stored)
            queues = list(self.subscribers.get(run_id, []))
            global_queues = list(self.global_subscribers)
        for q in queues:
            await q.put(stored)
        for q in global_queues:
            await q.put(stored)
        return stored

    def list_events(self, run_id: str) -> List[dict]:
        return list(self.history.get(run_id, []))

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(run_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(run_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(run_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)


class Processor:
    """Top-level entry point: validates a run, drives the scheduler, tracks is_processing."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        completion_factory: Optional[CompletionFactory] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.settings = settings
        self.completion_factory = completion_factory or completion_factory_from_settings(settings)
        self.sleep = sleep
        self.is_processing = False

    async def process(
        self,
        messages: Sequence[Message],
        queries: Sequence[Query],
        api_key: Optional[str],
        *,
        on_notice: Optional[NoticeCallback] = None,
        on_session_done: Optional[SessionCallback] = None,
    ) -> Optional[List[SessionResult]]:
        async def report(notice: Notice) -> None:
            if on_notice is not None:
                await on_notice(notice)

        try:
            validate_inputs(messages, queries, api_key)
        except InputInvalid as exc:
            logger.warning("Run rejected: %s", exc.message)
            await report(Notice(key=exc.kind, level="error", text=exc.message))
            return None

        self.is_processing = True
        completion: Optional[CompletionClient] = None
        try:
            completion = self.completion_factory(api_key or "")
            sessions = group_by_session(messages)
            logger.info("Processing %d sessions x %d queries", len(sessions), len(queries))
            scheduler = DispatchScheduler(
                completion,
                self.settings.dispatch,
                on_notice=on_notice,
                on_session_done=on_session_done,
                sleep=self.sleep,
            )
            results = await scheduler.run(sessions, queries)
            logger.info(
                "Run finished: %d remote calls, %d extracted, %d skipped, peak in-flight %d",
                scheduler.remote_calls,
                scheduler.extracted,
                scheduler.skipped,
                scheduler.slots.peak,
            )
            await report(Notice(key="run_complete", level="success", text="Data processing complete!"))
            return results
        except Exception as exc:
            logger.exception("Error processing data")
            await report(Notice(key="run_failed", level="error", text=str(exc) or "Error processing data"))
            return None
        finally:
            self.is_processing = False
            if completion is not None:
                await completion.close()


def results_to_rows(results: Sequence[SessionResult]) -> List[Dict[str, Any]]:
    return [result.to_row() for result in results]
