import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SYNTHNOTE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

LOCAL_MODEL_PLACEHOLDER = "[SELECT]"
CLOUD_MODEL_PLACEHOLDER = "[SELECT]"
API_KEY_PLACEHOLDER = "sk-or-v1-982...b52"

LocalProvider = Literal["auto", "ollama", "openai"]


class ModelEndpoint(BaseModel):
    base_url: str
    model_id: str
    timeout_s: float = 30.0
    max_tokens: int = 1024
    temperature: float = 0.7
    transient_retries: int = 1

    model_config = {"protected_namespaces": (), "frozen": True}


class PipelineConfig(BaseModel):
    """Read-only configuration handed to the controller at construction."""

    local: ModelEndpoint
    cloud: ModelEndpoint
    cloud_api_key: str = ""
    api_key_prefix: str = "sk-or-"
    local_provider: LocalProvider = "auto"
    proposal_count: int = 3
    notes_dir: str = "notes"
    title_max_chars: int = 60

    model_config = {"frozen": True}


class AppSettings(BaseModel):
    local_endpoint: str = "localhost:11434"
    local_model: str = LOCAL_MODEL_PLACEHOLDER
    local_provider: LocalProvider = "auto"
    local_timeout_s: float = 60.0
    local_max_tokens: int = 2000
    cloud_api_key: str = API_KEY_PLACEHOLDER
    cloud_model: str = CLOUD_MODEL_PLACEHOLDER
    cloud_base_url: str = "https://openrouter.ai/api/v1"
    cloud_timeout_s: float = 30.0
    cloud_max_tokens: int = 1024
    api_key_prefix: str = "sk-or-"
    transient_retries: int = 1
    proposal_count: int = 3
    title_max_chars: int = 60
    notes_dir: str = "notes"
    host: str = "127.0.0.1"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("cloud_api_key"):
            data["cloud_api_key"] = "********"
        return data

    def readiness_issues(self) -> List[str]:
        issues: List[str] = []
        if not self.local_model or self.local_model == LOCAL_MODEL_PLACEHOLDER:
            issues.append("local_model is not selected")
        if not self.cloud_model or self.cloud_model == CLOUD_MODEL_PLACEHOLDER:
            issues.append("cloud_model is not selected")
        if not self.cloud_api_key or self.cloud_api_key == API_KEY_PLACEHOLDER:
            issues.append("cloud_api_key is not set")
        return issues

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            local=ModelEndpoint(
                base_url=self.local_endpoint,
                model_id=self.local_model,
                timeout_s=self.local_timeout_s,
                max_tokens=self.local_max_tokens,
                transient_retries=self.transient_retries,
            ),
            cloud=ModelEndpoint(
                base_url=self.cloud_base_url,
                model_id=self.cloud_model,
                timeout_s=self.cloud_timeout_s,
                max_tokens=self.cloud_max_tokens,
                transient_retries=self.transient_retries,
            ),
            cloud_api_key=self.cloud_api_key,
            api_key_prefix=self.api_key_prefix,
            local_provider=self.local_provider,
            proposal_count=self.proposal_count,
            notes_dir=self.notes_dir,
            title_max_chars=self.title_max_chars,
        )


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "local_endpoint": os.getenv("LOCAL_ENDPOINT"),
        "local_model": os.getenv("LOCAL_MODEL"),
        "local_provider": os.getenv("LOCAL_PROVIDER"),
        "local_timeout_s": os.getenv("LOCAL_TIMEOUT_S"),
        "cloud_api_key": os.getenv("OPENROUTER_API_KEY"),
        "cloud_model": os.getenv("CLOUD_MODEL"),
        "cloud_base_url": os.getenv("CLOUD_BASE_URL"),
        "cloud_timeout_s": os.getenv("CLOUD_TIMEOUT_S"),
        "proposal_count": os.getenv("PROPOSAL_COUNT"),
        "transient_retries": os.getenv("TRANSIENT_RETRIES"),
        "notes_dir": os.getenv("NOTES_DIR"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("local_timeout_s", "cloud_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("proposal_count", "transient_retries", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
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
        except (OSError, ValueError):
            file_data = {}
    if not isinstance(file_data, dict):
        file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # A placeholder key in config.json should not hide a real key from the environment.
    if merged.get("cloud_api_key") in (None, "", API_KEY_PLACEHOLDER) and env_data.get("cloud_api_key"):
        merged["cloud_api_key"] = env_data["cloud_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
