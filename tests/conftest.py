from pathlib import Path

import pytest

from scplan.builtin_rules import default_rule_set
from scplan.config import PlannerSettings
from tests.fakes import adding, column, dropping, primary_index, secondary_index, snapshot


def make_settings(**overrides) -> PlannerSettings:
    settings = PlannerSettings(
        max_fixpoint_passes=32,
        merge_policy="by_op_type",
        validate_plan=True,
        log_level="DEBUG",
        default_cluster_version="21.1",
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings() -> PlannerSettings:
    return make_settings()


@pytest.fixture
def rules():
    return default_rule_set()


@pytest.fixture
def add_column_snapshot():
    """ALTER TABLE ADD COLUMN backed by a primary index swap."""
    return snapshot(
        adding(column(1, 2)),
        adding(primary_index(1, 2, [1, 2])),
        dropping(primary_index(1, 1, [1])),
    )


@pytest.fixture
def drop_column_snapshot():
    return snapshot(
        dropping(column(1, 3)),
        dropping(secondary_index(1, 4, [3])),
    )


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "scplan.json"
