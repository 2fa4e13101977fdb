import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from dotenv import load_dotenv

from .schemas import ClusterVersion

CONFIG_PATH = Path("scplan.json")
ENV_OVERRIDE_KEY = "SCPLAN_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class PlannerSettings(BaseModel):
    max_fixpoint_passes: int = Field(default=64, ge=1)
    # Tie-breaking heuristic for merging unconstrained nodes into one stage.
    merge_policy: Literal["by_op_type", "min_stages"] = "by_op_type"
    validate_plan: bool = True
    log_level: str = "INFO"
    default_cluster_version: str = "21.1"
    # Snapshots outside min_supported_version..binary_version are rejected.
    min_supported_version: str = "20.2"
    binary_version: str = "21.1"

    @field_validator("log_level")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        level = str(value or "INFO").upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value}")
        return level

    @field_validator("default_cluster_version", "min_supported_version", "binary_version")
    @classmethod
    def parse_version(cls, value: str) -> str:
        try:
            return str(ClusterVersion.model_validate(str(value)))
        except ValidationError as exc:
            raise ValueError(f"invalid cluster version {value!r}") from exc


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "max_fixpoint_passes": os.getenv("SCPLAN_MAX_FIXPOINT_PASSES"),
        "merge_policy": os.getenv("SCPLAN_MERGE_POLICY"),
        "validate_plan": os.getenv("SCPLAN_VALIDATE_PLAN"),
        "log_level": os.getenv("SCPLAN_LOG_LEVEL"),
        "default_cluster_version": os.getenv("SCPLAN_CLUSTER_VERSION"),
        "min_supported_version": os.getenv("SCPLAN_MIN_SUPPORTED_VERSION"),
        "binary_version": os.getenv("SCPLAN_BINARY_VERSION"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "max_fixpoint_passes" in cleaned:
        cleaned["max_fixpoint_passes"] = int(cleaned["max_fixpoint_passes"])
    if "validate_plan" in cleaned:
        cleaned["validate_plan"] = str(cleaned["validate_plan"]).lower() in ENV_OVERRIDE_TRUE
    if "merge_policy" in cleaned:
        cleaned["merge_policy"] = str(cleaned["merge_policy"]).lower()
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> PlannerSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except json.JSONDecodeError:
            logging.getLogger("scplan.config").warning("Ignoring unreadable config file %s", path)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    return PlannerSettings(**merged)


def save_settings(settings: PlannerSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))


def configure_logging(settings: PlannerSettings) -> logging.Logger:
    logger = logging.getLogger("scplan")
    logger.setLevel(settings.log_level)
    return logger
