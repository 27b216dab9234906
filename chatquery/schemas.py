from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field


MESSAGE_COLUMNS = {
    "message type": "message_type",
    "message content": "message_content",
    "session id": "session_id",
    "message date": "message_date",
    "participant identifier": "participant_identifier",
}
# camelCase names used by exported rows and older query files
MESSAGE_ALIASES = {
    "messageType": "message_type",
    "messageContent": "message_content",
    "sessionId": "session_id",
    "messageDate": "message_date",
    "participantIdentifier": "participant_identifier",
}
QUERY_COLUMNS = {
    "query name": "query_name",
    "query description": "query_description",
    "output format": "output_format",
}

RunStatus = Literal["running", "completed", "failed"]


class Message(BaseModel):
    message_type: str = ""
    message_content: str = ""
    session_id: str
    message_date: str = ""
    participant_identifier: str = ""
    extra_fields: Dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def iter_fields(self) -> Iterator[Tuple[str, str]]:
        for column, attr in MESSAGE_COLUMNS.items():
            yield column, getattr(self, attr)
        for alias, attr in MESSAGE_ALIASES.items():
            yield alias, getattr(self, attr)
        for key, value in self.extra_fields.items():
            yield key, value


class Query(BaseModel):
    query_name: str
    query_description: str
    output_format: Optional[str] = ""

    model_config = {"frozen": True}


# fixed row and export columns a query name may not take
RESERVED_COLUMNS = ("sessionId", "Start date", "Session ID")


@dataclass
class SessionResult:
    session_id: str
    start_date: str = ""
    answers: Dict[str, str] = field(default_factory=dict)

    def to_row(self) -> Dict[str, str]:
        row = {"sessionId": self.session_id, "Start date": self.start_date}
        row.update(self.answers)
        return row


class Notice(BaseModel):
    key: str
    level: Literal["info", "warning", "error", "success"] = "info"
    text: str


class RunSummary(BaseModel):
    run_id: str
    status: RunStatus = "running"
    error: Optional[str] = None
    session_count: int = 0
    query_count: int = 0
    results: List[Dict[str, Any]] = Field(default_factory=list)
