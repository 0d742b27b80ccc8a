import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "HNCHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

_INT_FIELDS = {
    "port",
    "llm_max_tokens",
    "max_steps",
    "max_parallel_executions",
    "max_context_size_bytes",
    "max_history_items",
    "max_batch_retries",
}
_FLOAT_FIELDS = {"llm_temperature", "step_timeout_seconds", "execution_timeout_seconds"}


class AppSettings(BaseModel):
    llm_base_url: str = "http://127.0.0.1:1234/v1"
    llm_model: str = "qwen/qwen3-8b"
    llm_api_key: Optional[str] = None
    llm_max_tokens: int = 2048
    llm_temperature: float = 0.2
    database_path: str = "hnchat.db"
    host: str = "0.0.0.0"
    port: int = 8000

    max_steps: int = Field(default=20, ge=1)
    step_timeout_seconds: float = Field(default=60.0, gt=0)
    execution_timeout_seconds: float = Field(default=30.0, gt=0)
    max_parallel_executions: int = Field(default=4, ge=1)
    max_context_size_bytes: int = Field(default=1024 * 1024, ge=1024)
    max_history_items: int = Field(default=100, ge=2)
    max_batch_retries: int = Field(default=1, ge=0)

    model_config = {"protected_namespaces": ()}

    def to_safe_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        if data.get("llm_api_key"):
            data["llm_api_key"] = "********"
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_model": os.getenv("LLM_MODEL"),
        "llm_api_key": os.getenv("LLM_API_KEY"),
        "llm_max_tokens": os.getenv("LLM_MAX_TOKENS"),
        "llm_temperature": os.getenv("LLM_TEMPERATURE"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "max_steps": os.getenv("MAX_STEPS"),
        "step_timeout_seconds": os.getenv("STEP_TIMEOUT_SECONDS"),
        "execution_timeout_seconds": os.getenv("EXECUTION_TIMEOUT_SECONDS"),
        "max_parallel_executions": os.getenv("MAX_PARALLEL_EXECUTIONS"),
        "max_context_size_bytes": os.getenv("MAX_CONTEXT_SIZE_BYTES"),
        "max_history_items": os.getenv("MAX_HISTORY_ITEMS"),
        "max_batch_retries": os.getenv("MAX_BATCH_RETRIES"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS & cleaned.keys():
        cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS & cleaned.keys():
        cleaned[key] = float(cleaned[key])
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
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("llm_api_key") and env_data.get("llm_api_key"):
        merged["llm_api_key"] = env_data["llm_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
