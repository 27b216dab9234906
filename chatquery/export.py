import csv
import io
from typing import Any, Dict, List, Sequence

EXPORT_FILENAME = "chat_analysis_results.csv"


def result_columns(rows: Sequence[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key != "sessionId" and key not in columns:
                columns.append(key)
    return columns


def filter_results(rows: Sequence[Dict[str, Any]], term: str = "") -> List[Dict[str, Any]]:
    needle = (term or "").strip().lower()
    if not needle:
        return list(rows)
    return [row for row in rows if any(needle in str(value).lower() for value in row.values())]


def results_to_csv(rows: Sequence[Dict[str, Any]]) -> str:
    columns = result_columns(rows)
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(["Session ID", *columns])
    for row in rows:
        writer.writerow([row.get("sessionId", ""), *(row.get(key) or "" for key in columns)])
    return buf.getvalue()
