import json
import logging

import pytest
from pydantic import ValidationError

from scplan.config import PlannerSettings, configure_logging, load_settings, save_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in (
        "SCPLAN_MAX_FIXPOINT_PASSES",
        "SCPLAN_MERGE_POLICY",
        "SCPLAN_VALIDATE_PLAN",
        "SCPLAN_LOG_LEVEL",
        "SCPLAN_CLUSTER_VERSION",
        "SCPLAN_MIN_SUPPORTED_VERSION",
        "SCPLAN_BINARY_VERSION",
        "SCPLAN_ENV_OVERRIDES_CONFIG",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_config_or_env(config_path):
    settings = load_settings(config_path=config_path)
    assert settings.max_fixpoint_passes == 64
    assert settings.merge_policy == "by_op_type"
    assert settings.validate_plan is True
    assert settings.default_cluster_version == "21.1"
    assert settings.min_supported_version == "20.2"
    assert settings.binary_version == "21.1"


def test_config_precedence_configjson_wins_by_default(config_path, monkeypatch):
    config_path.write_text(json.dumps({"merge_policy": "by_op_type"}))
    monkeypatch.setenv("SCPLAN_MERGE_POLICY", "min_stages")
    settings = load_settings(config_path=config_path)
    assert settings.merge_policy == "by_op_type"


def test_env_override_when_scplan_env_override_set(config_path, monkeypatch):
    config_path.write_text(json.dumps({"merge_policy": "by_op_type"}))
    monkeypatch.setenv("SCPLAN_MERGE_POLICY", "MIN_STAGES")
    monkeypatch.setenv("SCPLAN_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.merge_policy == "min_stages"


def test_env_values_are_coerced(config_path, monkeypatch):
    monkeypatch.setenv("SCPLAN_MAX_FIXPOINT_PASSES", "8")
    monkeypatch.setenv("SCPLAN_VALIDATE_PLAN", "no")
    monkeypatch.setenv("SCPLAN_LOG_LEVEL", "debug")
    monkeypatch.setenv("SCPLAN_CLUSTER_VERSION", "20.2")
    monkeypatch.setenv("SCPLAN_BINARY_VERSION", "21.2")
    settings = load_settings(config_path=config_path)
    assert settings.max_fixpoint_passes == 8
    assert settings.validate_plan is False
    assert settings.log_level == "DEBUG"
    assert settings.default_cluster_version == "20.2"
    assert settings.binary_version == "21.2"


def test_unreadable_config_is_ignored(config_path, caplog):
    config_path.write_text("{not json")
    with caplog.at_level(logging.WARNING, logger="scplan.config"):
        settings = load_settings(config_path=config_path)
    assert settings.merge_policy == "by_op_type"
    assert "Ignoring unreadable config file" in caplog.text


def test_save_then_load(config_path, settings):
    save_settings(settings.model_copy(update={"merge_policy": "min_stages"}), config_path=config_path)
    saved = json.loads(config_path.read_text())
    assert saved["merge_policy"] == "min_stages"
    assert load_settings(config_path=config_path).merge_policy == "min_stages"


def test_invalid_settings_rejected():
    with pytest.raises(ValidationError):
        PlannerSettings(merge_policy="fastest")
    with pytest.raises(ValidationError):
        PlannerSettings(max_fixpoint_passes=0)
    with pytest.raises(ValidationError):
        PlannerSettings(log_level="CHATTY")
    with pytest.raises(ValidationError):
        PlannerSettings(binary_version="latest")
    with pytest.raises(ValidationError):
        PlannerSettings(min_supported_version="")


def test_configure_logging_sets_package_level(settings):
    logger = configure_logging(settings.model_copy(update={"log_level": "WARNING"}))
    assert logger.name == "scplan"
    assert logger.level == logging.WARNING
    logger.setLevel(logging.NOTSET)


def test_version_window_is_normalized():
    settings = PlannerSettings(min_supported_version="20.2-0", binary_version="21.1-4")
    assert settings.min_supported_version == "20.2"
    assert settings.binary_version == "21.1-4"
