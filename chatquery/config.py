import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHATQUERY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class DispatchConfig(BaseModel):
    max_concurrent_requests: int = 3
    slot_wait_timeout_s: float = 60.0
    base_delay_s: float = 1.0
    backoff_factor: float = 1.25
    max_delay_s: float = 4.0
    cooldown_after_calls: int = 20
    cooldown_s: float = 10.0
    rate_limit_cooldown_s: float = 20.0
    session_pause_s: float = 0.5
    notice_dedup_window_s: float = 5.0


class PromptConfig(BaseModel):
    max_content_chars: int = 500
    max_transcript_chars: int = 12000
    temperature: float = 0.1
    max_tokens: int = 100


class AppSettings(BaseModel):
    openai_api_key: Optional[str] = None
    completion_base_url: str = "https://api.openai.com/v1"
    model_id: str = "gpt-3.5-turbo"
    request_timeout_s: float = 60.0
    host: str = "0.0.0.0"
    port: int = 8000
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("openai_api_key"):
            data["openai_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "completion_base_url": os.getenv("COMPLETION_BASE_URL"),
        "model_id": os.getenv("COMPLETION_MODEL"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "max_concurrent_requests": os.getenv("MAX_CONCURRENT_REQUESTS"),
        "base_delay_s": os.getenv("BASE_DELAY_S"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "request_timeout_s" in cleaned:
        cleaned["request_timeout_s"] = float(cleaned["request_timeout_s"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    dispatch: Dict[str, Any] = {}
    if "max_concurrent_requests" in cleaned:
        dispatch["max_concurrent_requests"] = int(cleaned.pop("max_concurrent_requests"))
    if "base_delay_s" in cleaned:
        dispatch["base_delay_s"] = float(cleaned.pop("base_delay_s"))
    if dispatch:
        cleaned["dispatch"] = dispatch
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_section(low: Any, high: Any) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    if isinstance(low, dict):
        merged.update(low)
    if isinstance(high, dict):
        merged.update(high)
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        low, high = file_data, env_data
    else:
        low, high = env_data, file_data
    merged = {**low, **high}
    if "dispatch" in low or "dispatch" in high:
        merged["dispatch"] = _merge_section(low.get("dispatch"), high.get("dispatch"))
    if not merged.get("openai_api_key") and env_data.get("openai_api_key"):
        merged["openai_api_key"] = env_data["openai_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
