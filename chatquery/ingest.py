import csv
import io
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import InputInvalid
from .schemas import MESSAGE_COLUMNS, QUERY_COLUMNS, Message, Query


def _clean(value: Optional[str]) -> str:
    return (value or "").strip().replace('"', "")


def _read_rows(text: str, label: str, required: Sequence[str]) -> Tuple[List[str], List[List[str]]]:
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    try:
        raw_headers = next(reader)
    except StopIteration:
        raise InputInvalid(f"{label} CSV is empty")
    headers = [(h or "").strip().lower() for h in raw_headers]
    missing = [h for h in required if h not in headers]
    if missing:
        raise InputInvalid(f"{label} CSV is missing required headers: {', '.join(missing)}")
    needed = max(headers.index(h) for h in required)
    rows: List[List[str]] = []
    for values in reader:
        if not values or not any(v.strip() for v in values):
            continue
        # Rows that cannot reach every required column are dropped.
        if len(values) <= 1 or len(values) <= needed:
            continue
        rows.append(values)
    return headers, rows


def parse_chat_csv(text: str) -> List[Message]:
    headers, rows = _read_rows(text, "Chat", list(MESSAGE_COLUMNS))
    index = {column: headers.index(column) for column in MESSAGE_COLUMNS}
    messages: List[Message] = []
    for values in rows:
        fields = {attr: _clean(values[index[column]]) for column, attr in MESSAGE_COLUMNS.items()}
        extra: Dict[str, str] = {}
        for pos, header in enumerate(headers):
            if pos >= len(values) or not header or header in MESSAGE_COLUMNS:
                continue
            extra[header] = _clean(values[pos])
        messages.append(Message(**fields, extra_fields=extra))
    return messages


def parse_query_csv(text: str) -> List[Query]:
    headers, rows = _read_rows(text, "Query", list(QUERY_COLUMNS))
    index = {column: headers.index(column) for column in QUERY_COLUMNS}
    return [
        Query(**{attr: _clean(values[index[column]]) for column, attr in QUERY_COLUMNS.items()})
        for values in rows
    ]
