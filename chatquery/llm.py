from typing import Any, Dict, List, Optional, Sequence

import httpx

from .errors import RateLimited, RequestFailed, ServiceUnavailable, TransportError
from .schemas import Message, Query


DEFAULT_OUTPUT_FORMAT = "Provide a plain, direct answer with no bullet points, prefixes, or formatting."
TRUNCATION_MARKER = " ...[truncated]"
UNAVAILABLE_STATUSES = {503, 504}


def _keep_char(ch: str) -> bool:
    code = ord(ch)
    if code < 0x20:
        return False
    if 0x7F <= code <= 0x9F:
        return False
    return True


def sanitize_text(value: Any) -> str:
    """Map text onto printable single-byte characters.

    Characters above U+00FF become a space, C0/C1 control characters (newline
    and tab included) are dropped. Applying it twice changes nothing.
    """
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    out = []
    for ch in text:
        if ord(ch) > 0xFF:
            out.append(" ")
        elif _keep_char(ch):
            out.append(ch)
    return "".join(out)


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def build_transcript(
    messages: Sequence[Message],
    max_content_chars: int = 500,
    max_transcript_chars: int = 12000,
) -> str:
    lines: List[str] = []
    for msg in messages:
        content = truncate(sanitize_text(msg.message_content), max_content_chars)
        lines.append(
            f"messageType: {sanitize_text(msg.message_type)}, "
            f"messageContent: {content}, "
            f"participantIdentifier: {sanitize_text(msg.participant_identifier)}, "
            f"messageDate: {sanitize_text(msg.message_date)}"
        )
    return truncate("\n".join(lines), max_transcript_chars)


def output_format_instruction(query: Query) -> str:
    fmt = sanitize_text(query.output_format or "").strip()
    return fmt or DEFAULT_OUTPUT_FORMAT


def build_prompt(session_id: str, query: Query, transcript: str) -> List[Dict[str, str]]:
    description = sanitize_text(query.query_description)
    session = sanitize_text(session_id)
    system = (
        "You are an assistant that analyzes chat transcripts. Your task is to answer the following "
        f'query about a chat transcript: "{description}".\n\n'
        f'IMPORTANT: The session ID for this conversation is "{session}". This is a unique identifier '
        "provided in the data and should be preserved exactly as is. Do not generate new session IDs "
        "or modify the provided session ID in any way.\n\n"
        f"You MUST format your response exactly as specified: {output_format_instruction(query)}. "
        "Do not include any additional text, bullet points, numbers, or prefixes in your response."
    )
    user = (
        f'Based on the following chat transcript for session ID "{session}", '
        f'answer the query "{description}":\n\n{transcript}'
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except Exception:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message
    if isinstance(error, str) and error.strip():
        return error
    return None


def classify_response(response: httpx.Response) -> None:
    """Raise the typed error matching a non-success response."""
    if response.is_success:
        return
    status = response.status_code
    message = _error_message(response)
    if status == 429:
        raise RateLimited(sanitize_text(message or f"API call failed: {status}"), status_code=status)
    if status in UNAVAILABLE_STATUSES:
        raise ServiceUnavailable(sanitize_text(message or ""), status_code=status)
    raise RequestFailed(sanitize_text(message or f"API call failed: {status}"), status_code=status)


def parse_answer(data: Any) -> str:
    try:
        choices = data.get("choices") or []
        content = choices[0]["message"]["content"]
    except (AttributeError, IndexError, KeyError, TypeError):
        raise RequestFailed("Malformed response from completion service")
    if not isinstance(content, str):
        raise RequestFailed("Malformed response from completion service")
    return sanitize_text(content.strip()).strip()


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-3.5-turbo",
        temperature: float = 0.1,
        max_tokens: int = 100,
        max_content_chars: int = 500,
        max_transcript_chars: int = 12000,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = sanitize_text(api_key).strip()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_content_chars = max_content_chars
        self.max_transcript_chars = max_transcript_chars
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    def build_payload(self, session_id: str, messages: Sequence[Message], query: Query) -> Dict[str, Any]:
        transcript = build_transcript(messages, self.max_content_chars, self.max_transcript_chars)
        return {
            "model": self.model,
            "messages": build_prompt(session_id, query, transcript),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    async def answer(self, session_id: str, messages: Sequence[Message], query: Query) -> str:
        payload = self.build_payload(session_id, messages, query)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        classify_response(resp)
        try:
            data = resp.json()
        except Exception:
            raise RequestFailed("Malformed response from completion service")
        return parse_answer(data)

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
