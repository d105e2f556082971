import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import toml
import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CONFIG_DIR.parent.parent


class LLMSettings(BaseModel):
    provider: str = "openai"
    model_id: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str = ""
    extra_params: Union[Dict[str, Any], str] = Field(default_factory=dict)


class ImageSettings(BaseModel):
    default_model: str = "flux-dev"
    batch_model: Optional[str] = "flux-fast"
    aliases: Dict[str, str] = Field(default_factory=dict)
    input_defaults: Dict[str, Any] = Field(default_factory=dict)
    timeout_sec: int = 300
    poll_interval_sec: int = 2


class TrainerSettings(BaseModel):
    owner: str = "ostris"
    name: str = "flux-dev-lora-trainer"
    version: str = "e440909d3512c31646ee2e0c7d6f6f4d234e850e2127db8a1d24272f29f0003a"
    destination_owner: Optional[str] = None
    default_owner: str = "ai-film-studio"
    params: Dict[str, Any] = Field(default_factory=dict)
    webhook_url: Optional[str] = None


class StudioSettings(BaseModel):
    db_path: str
    batch_concurrency: int = 3
    consistency_threshold: int = 70
    log_file: str = "logs/previz.log"
    log_level: str = "INFO"
    pricing: Dict[str, float] = Field(default_factory=dict)
    fixed_costs: Dict[str, Any] = Field(default_factory=dict)
    replicate_api_token: str = ""
    replicate_base_url: str = "https://api.replicate.com/v1"
    llm: LLMSettings = Field(default_factory=LLMSettings)
    image: ImageSettings = Field(default_factory=ImageSettings)
    trainer: TrainerSettings = Field(default_factory=TrainerSettings)
    brands: Dict[str, Any] = Field(default_factory=dict)

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


def get_default_config() -> Dict[str, Any]:
    """Get default core configuration"""
    return {
        "db_path": str(PROJECT_ROOT / "data" / "previz.db"),
        "batch_concurrency": 3,
        "consistency_threshold": 70,
        "log_file": str(PROJECT_ROOT / "logs" / "previz.log"),
        "log_level": "INFO",
        "pricing": {},
        "fixed_costs": {},
        "replicate_base_url": "https://api.replicate.com/v1",
    }


def _resolve_path(value: str) -> str:
    path = Path(os.path.expanduser(value))
    return str(path if path.is_absolute() else PROJECT_ROOT / path)


def load_core_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Defaults merged with studio.toml."""
    config = get_default_config()
    core_path = Path(path) if path else CONFIG_DIR / "studio.toml"
    if core_path.exists():
        with open(core_path, "r", encoding="utf-8") as f:
            loaded = toml.load(f)
        for key, value in loaded.items():
            if isinstance(value, dict) and isinstance(config.get(key), dict):
                config[key] = {**config[key], **value}
            else:
                config[key] = value
    for key in ("db_path", "log_file"):
        config[key] = _resolve_path(config[key])
    return config


def load_provider_config(config_dir: Optional[Path] = None) -> Dict[str, Any]:
    """providers.yaml if present, otherwise the shipped providers.example.yaml."""
    base = Path(config_dir) if config_dir else CONFIG_DIR
    config_path = base / "providers.yaml"
    if not config_path.exists():
        config_path = base / "providers.example.yaml"
    if not config_path.exists():
        return {}
    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_env(env_file: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """.env values overlaid by the process environment."""
    candidates = [Path(env_file)] if env_file else [PROJECT_ROOT / ".env", CONFIG_DIR / ".env"]
    env_path = next((p for p in candidates if p.exists()), None)
    env_vars: Dict[str, str] = {}
    if env_path:
        env_vars.update({k: v for k, v in dotenv_values(env_path).items() if v is not None})
    env_vars.update(os.environ if environ is None else environ)
    return env_vars


def apply_env_overrides(core: Dict[str, Any], providers: Dict[str, Any], env_vars: Mapping[str, str]) -> Dict[str, Any]:
    merged = dict(core)
    merged["llm"] = dict(providers.get("llm") or {})
    merged["image"] = dict(providers.get("image") or {})
    merged["trainer"] = dict(providers.get("trainer") or {})
    merged["brands"] = dict(providers.get("brands") or {})

    def set_config(section: Optional[str], key: str, value: Optional[str]) -> None:
        if not value:
            return
        if section is None:
            merged[key] = value
        else:
            merged[section][key] = value

    set_config(None, "db_path", env_vars.get("PREVIZ_DB_PATH"))
    set_config(None, "log_level", env_vars.get("PREVIZ_LOG_LEVEL"))
    set_config(None, "replicate_api_token", env_vars.get("REPLICATE_API_TOKEN"))
    set_config("trainer", "destination_owner", env_vars.get("REPLICATE_OWNER"))
    set_config("llm", "model_id", env_vars.get("LLM_MODEL_ID"))
    set_config("llm", "api_key", env_vars.get("LLM_API_KEY"))
    set_config("llm", "base_url", env_vars.get("LLM_BASE_URL"))
    return merged


def load_settings(
    core_path: Optional[Path] = None,
    provider_dir: Optional[Path] = None,
    env_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> StudioSettings:
    core = load_core_config(core_path)
    providers = load_provider_config(provider_dir)
    env_vars = load_env(env_file, environ)
    settings = StudioSettings.model_validate(apply_env_overrides(core, providers, env_vars))
    logger.debug("Loaded settings (db=%s, llm=%s)", settings.db_path, settings.llm.model_id)
    return settings
