import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .aggregator import ResultAggregator
from .config import DispatchConfig
from .errors import QueryError, QueueTimeout, RateLimited
from .extraction import DirectExtractionResolver
from .grouping import start_date
from .llm import CompletionClient
from .schemas import Message, Notice, Query, SessionResult

logger = logging.getLogger("uvicorn.error")

SleepFn = Callable[[float], Awaitable[None]]
NoticeCallback = Callable[[Notice], Awaitable[None]]
SessionCallback = Callable[[SessionResult], Awaitable[None]]

RATE_LIMIT_NOTICE = Notice(
    key="rate_limit",
    level="warning",
    text="API rate limit exceeded. Please wait a moment and try again, or use a different API key.",
)
GENERIC_QUERY_ERROR = "Error processing query"


class SlotPool:
    """Bounded pool of request slots with an acquire-with-timeout."""

    def __init__(self, limit: int):
        self.limit = max(1, limit)
        self._sem = asyncio.Semaphore(self.limit)
        self.in_flight = 0
        self.peak = 0

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        try:
            if timeout is None or timeout <= 0:
                await self._sem.acquire()
            else:
                await asyncio.wait_for(self._sem.acquire(), timeout)
        except asyncio.TimeoutError:
            return False
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        return True

    def release(self) -> None:
        self.in_flight -= 1
        self._sem.release()


class Pacer:
    """Spaces out remote calls, growing the delay with each consecutive call.

    Callers hold ``lock`` around ``pace`` so call starts are serialized.
    """

    def __init__(self, config: DispatchConfig, sleep: SleepFn = asyncio.sleep):
        self.config = config
        self.sleep = sleep
        self.consecutive_calls = 0
        self.total_calls = 0
        self.last_delay = 0.0
        self.pending_cooldown_s = 0.0
        self.lock = asyncio.Lock()

    def next_delay(self) -> float:
        if self.total_calls == 0:
            return 0.0
        delay = self.config.base_delay_s * (self.config.backoff_factor ** self.consecutive_calls)
        return min(delay, self.config.max_delay_s)

    async def pace(self) -> float:
        if self.pending_cooldown_s > 0:
            cooldown, self.pending_cooldown_s = self.pending_cooldown_s, 0.0
            logger.info("Cooling down %.1fs after rate limit", cooldown)
            await self.sleep(cooldown)
        threshold = self.config.cooldown_after_calls
        if threshold > 0 and self.consecutive_calls >= threshold:
            logger.info("Pausing %.1fs after %d consecutive calls", self.config.cooldown_s, self.consecutive_calls)
            await self.sleep(self.config.cooldown_s)
            self.consecutive_calls = 0
        delay = self.next_delay()
        self.last_delay = delay
        self.consecutive_calls += 1
        self.total_calls += 1
        if delay > 0:
            await self.sleep(delay)
        return delay

    def rate_limited(self) -> None:
        # applied by the next call start, not by the call that hit the limit
        self.consecutive_calls = 0
        self.pending_cooldown_s = max(self.pending_cooldown_s, self.config.rate_limit_cooldown_s)


class NoticeDeduplicator:
    def __init__(self, window_s: float, clock: Callable[[], float] = time.monotonic):
        self.window_s = window_s
        self.clock = clock
        self._last_sent: Dict[str, float] = {}

    def should_emit(self, key: str) -> bool:
        now = self.clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.window_s:
            return False
        self._last_sent[key] = now
        return True


class DispatchScheduler:
    """Runs one session x query workload. Create a fresh instance per run."""

    def __init__(
        self,
        completion: CompletionClient,
        config: Optional[DispatchConfig] = None,
        *,
        resolver: Optional[DirectExtractionResolver] = None,
        on_notice: Optional[NoticeCallback] = None,
        on_session_done: Optional[SessionCallback] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.completion = completion
        self.config = config or DispatchConfig()
        self.resolver = resolver or DirectExtractionResolver()
        self.on_notice = on_notice
        self.on_session_done = on_session_done
        self.sleep = sleep
        self.slots = SlotPool(self.config.max_concurrent_requests)
        self.pacer = Pacer(self.config, sleep=sleep)
        self.notices = NoticeDeduplicator(self.config.notice_dedup_window_s, clock=clock)
        self.remote_calls = 0
        self.extracted = 0
        self.skipped = 0

    async def notify(self, notice: Notice) -> None:
        if not self.notices.should_emit(notice.key):
            return
        if self.on_notice is not None:
            await self.on_notice(notice)

    async def _call(self, session_id: str, messages: Sequence[Message], query: Query) -> str:
        # pacing sleeps never hold a slot; the slot wait only covers in-flight calls
        async with self.pacer.lock:
            await self.pacer.pace()
            if not await self.slots.acquire(self.config.slot_wait_timeout_s):
                raise QueueTimeout()
        try:
            self.remote_calls += 1
            return await self.completion.answer(session_id, messages, query)
        except RateLimited:
            self.pacer.rate_limited()
            raise
        finally:
            self.slots.release()

    async def dispatch(self, session_id: str, messages: Sequence[Message], query: Query) -> str:
        try:
            return await self._call(session_id, messages, query)
        except RateLimited as exc:
            logger.warning("Rate limited on query %r for session %s: %s", query.query_name, session_id, exc.message)
            await self.notify(RATE_LIMIT_NOTICE)
            return exc.placeholder()
        except QueueTimeout as exc:
            self.skipped += 1
            logger.warning("Skipped query %r for session %s: no free request slot", query.query_name, session_id)
            return exc.placeholder()
        except QueryError as exc:
            logger.warning("Query %r failed for session %s: %s [%s]", query.query_name, session_id, exc.message, exc.kind)
            return exc.placeholder()
        except Exception:
            logger.exception("Error processing query %r for session %s", query.query_name, session_id)
            return GENERIC_QUERY_ERROR

    async def run_session(
        self,
        aggregator: ResultAggregator,
        session_id: str,
        messages: Sequence[Message],
        queries: Sequence[Query],
    ) -> SessionResult:
        result = aggregator.start_session(session_id, start_date(messages))
        pending: List[Query] = []
        for query in queries:
            if self.resolver.try_resolve(query, messages, result):
                self.extracted += 1
                continue
            pending.append(query)
        if pending:
            answers = await asyncio.gather(*(self.dispatch(session_id, messages, q) for q in pending))
            for query, answer in zip(pending, answers):
                aggregator.record(session_id, query.query_name, answer)
        return aggregator.finalize_session(session_id)

    async def run(self, sessions: Dict[str, List[Message]], queries: Sequence[Query]) -> List[SessionResult]:
        aggregator = ResultAggregator([q.query_name for q in queries])
        for index, (session_id, messages) in enumerate(sessions.items()):
            if index and self.config.session_pause_s > 0:
                await self.sleep(self.config.session_pause_s)
            result = await self.run_session(aggregator, session_id, messages, queries)
            if self.on_session_done is not None:
                await self.on_session_done(result)
        return aggregator.results()
