import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "NEONCHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    gateway_base_url: str = "https://ai.gateway.lovable.dev/v1"
    gateway_api_key: Optional[str] = None
    chat_model: str = "google/gemini-3-flash-preview"
    search_model: str = "google/gemini-2.5-flash"
    memory_model: str = "google/gemini-2.5-flash-lite"
    request_timeout_s: float = 120.0

    semantic_search_url: Optional[str] = None
    semantic_top_k: int = 5
    memory_limit: int = 10
    memory_capacity: int = 100
    tool_event_max_chars: int = 200
    tool_log_max_chars: int = 1000
    enable_tools_default: bool = True

    database_path: str = "neonchat.db"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("gateway_api_key"):
            data["gateway_api_key"] = "********"
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gateway_base_url": os.getenv("GATEWAY_BASE_URL"),
        "gateway_api_key": os.getenv("GATEWAY_API_KEY") or os.getenv("LOVABLE_API_KEY"),
        "chat_model": os.getenv("CHAT_MODEL"),
        "search_model": os.getenv("SEARCH_MODEL"),
        "memory_model": os.getenv("MEMORY_MODEL"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "semantic_search_url": os.getenv("SEMANTIC_SEARCH_URL"),
        "semantic_top_k": os.getenv("SEMANTIC_TOP_K"),
        "enable_tools_default": os.getenv("ENABLE_TOOLS_DEFAULT"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "semantic_top_k" in cleaned:
        cleaned["semantic_top_k"] = int(cleaned["semantic_top_k"])
    if "request_timeout_s" in cleaned:
        cleaned["request_timeout_s"] = float(cleaned["request_timeout_s"])
    if "enable_tools_default" in cleaned:
        cleaned["enable_tools_default"] = str(cleaned["enable_tools_default"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


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
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # A masked key written back by to_safe_dict() must never replace the real one.
    if merged.get("gateway_api_key") == "********":
        merged["gateway_api_key"] = env_data.get("gateway_api_key")
    if not merged.get("gateway_api_key") and env_data.get("gateway_api_key"):
        merged["gateway_api_key"] = env_data["gateway_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
