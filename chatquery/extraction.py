import re
from typing import Optional, Sequence

from .schemas import Message, Query, SessionResult


EXTRACTION_PHRASES = ("extract column", "get column", "pull column")
PARTICIPANT_PHRASE = "participant identifier"
_QUOTED_RE = re.compile(r"['\"]([^'\"]+)['\"]")


def _mentions_participant(query: Query) -> bool:
    return (
        PARTICIPANT_PHRASE in query.query_name.lower()
        or PARTICIPANT_PHRASE in query.query_description.lower()
    )


def is_extraction_query(query: Query) -> bool:
    description = query.query_description.lower()
    if any(phrase in description for phrase in EXTRACTION_PHRASES):
        return True
    return _mentions_participant(query)


def extract_column_name(query: Query) -> str:
    """Column a direct-extraction query points at, or "" when it names none."""
    match = _QUOTED_RE.search(query.query_description)
    if match:
        return match.group(1).lower()
    if _mentions_participant(query):
        return PARTICIPANT_PHRASE
    return ""


def find_column_value(messages: Sequence[Message], column_name: str) -> Optional[str]:
    if not column_name:
        return None
    target = column_name.lower()
    for message in messages:
        for key, value in message.iter_fields():
            if key.lower() != target:
                continue
            if value and value.strip():
                return value
    if target == PARTICIPANT_PHRASE:
        for message in messages:
            if message.participant_identifier.strip():
                return message.participant_identifier
    return None


class DirectExtractionResolver:
    """Answers "read this column" queries from the messages without a remote call."""

    def try_resolve(self, query: Query, messages: Sequence[Message], result: SessionResult) -> bool:
        if not is_extraction_query(query):
            return False
        value = find_column_value(messages, extract_column_name(query))
        if value is None:
            return False
        result.answers[query.query_name] = value
        return True
