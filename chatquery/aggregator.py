from typing import Dict, List, Sequence

from .errors import QueueTimeout
from .schemas import SessionResult


class ResultAggregator:
    """Owns one SessionResult per session, in the order sessions were first seen."""

    def __init__(self, query_names: Sequence[str]):
        self.query_names = list(query_names)
        self._results: Dict[str, SessionResult] = {}
        self._finalized: List[str] = []

    def start_session(self, session_id: str, start_date: str) -> SessionResult:
        result = self._results.get(session_id)
        if result is None:
            result = SessionResult(session_id=session_id, start_date=start_date)
            self._results[session_id] = result
        return result

    def record(self, session_id: str, query_name: str, value: str) -> None:
        if query_name not in self.query_names:
            raise KeyError(f"Unknown query: {query_name}")
        self._results[session_id].answers[query_name] = value

    def finalize_session(self, session_id: str) -> SessionResult:
        result = self._results[session_id]
        missing = QueueTimeout().placeholder()
        # Rebuild in query order so every row lists the columns the same way.
        result.answers = {name: result.answers.get(name, missing) for name in self.query_names}
        if session_id not in self._finalized:
            self._finalized.append(session_id)
        return result

    @property
    def complete(self) -> bool:
        return len(self._finalized) == len(self._results)

    def results(self) -> List[SessionResult]:
        if not self.complete:
            raise RuntimeError("results requested before every session was finalized")
        return list(self._results.values())
