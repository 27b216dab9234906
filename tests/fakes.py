import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from chatquery.schemas import Message, Notice, Query


class FakeCompletionClient:
    """Stands in for CompletionClient; records calls and concurrent entries."""

    def __init__(
        self,
        answer: str = "42",
        delay_seconds: float = 0.0,
        errors: Optional[Dict[Tuple[str, str], Exception]] = None,
        on_call: Optional[Callable[[str, str], Any]] = None,
    ) -> None:
        self.answer_text = answer
        self.delay_seconds = delay_seconds
        self.errors = errors or {}
        self.on_call = on_call
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False

    async def answer(self, session_id: str, messages: Sequence[Message], query: Query) -> str:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            self.calls.append({"session_id": session_id, "query": query.query_name, "messages": len(messages)})
            if self.on_call is not None:
                self.on_call(session_id, query.query_name)
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            error = self.errors.get((session_id, query.query_name))
            if error is not None:
                raise error
            return self.answer_text
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class NoticeRecorder:
    def __init__(self) -> None:
        self.notices: List[Notice] = []

    async def __call__(self, notice: Notice) -> None:
        self.notices.append(notice)


def make_message(session_id: str, date: str = "", content: str = "hi", **kwargs: Any) -> Message:
    extra = kwargs.pop("extra_fields", {})
    return Message(
        message_type=kwargs.pop("message_type", "user"),
        message_content=content,
        session_id=session_id,
        message_date=date,
        participant_identifier=kwargs.pop("participant_identifier", ""),
        extra_fields=extra,
    )


def make_query(name: str, description: str = "What is the user asking?", output_format: str = "") -> Query:
    return Query(query_name=name, query_description=description, output_format=output_format)
