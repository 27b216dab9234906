from typing import Dict, Iterable, List, Sequence

from .schemas import Message


def group_by_session(messages: Iterable[Message]) -> Dict[str, List[Message]]:
    """Split messages per session, keeping first-seen order of sessions and messages."""
    sessions: Dict[str, List[Message]] = {}
    for message in messages:
        sessions.setdefault(message.session_id, []).append(message)
    return sessions


def start_date(messages: Sequence[Message]) -> str:
    # First message in arrival order, not the earliest date.
    if not messages:
        return ""
    return messages[0].message_date
