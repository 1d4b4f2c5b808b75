import pytest

from stageflow.errors import ConfigError
from stageflow.models import StageDecision, Task
from stageflow.resolver import context_defaults, resolve_activation
from stageflow.router import STAGE_CATALOG


def _resolve(task: Task | None = None, **kwargs):
    return resolve_activation(STAGE_CATALOG, task=task or Task(id="T", title="t"), **kwargs)


def test_table_is_total_over_the_catalog() -> None:
    table = _resolve()

    assert set(table) == {stage.name for stage in STAGE_CATALOG}
    assert table["plan"].decision is StageDecision.ALWAYS
    assert table["scaffold"].decision is StageDecision.SKIP_THIS_TIME
    assert table["test"].decision is StageDecision.RUN_THIS_TIME
    assert set(table.sources().values()) == {"default"}


def test_task_flag_beats_project_setting() -> None:
    task = Task(id="T", title="t", stage_overrides={"test": "run", "review": "skip"})

    table = _resolve(task, project_stages={"test": "never", "review": "always"})

    assert table["test"].decision is StageDecision.RUN_THIS_TIME
    assert table["test"].source == "task"
    assert table["review"].decision is StageDecision.SKIP_THIS_TIME


def test_project_setting_beats_context_defaults() -> None:
    table = _resolve(project_stages={"review": "never"}, context="production service")

    assert table["review"].decision is StageDecision.NEVER
    assert table["review"].source == "project"


def test_context_descriptor_only_picks_defaults() -> None:
    table = _resolve(context="Prototype for a demo, no lint")

    assert table["review"].decision is StageDecision.SKIP_THIS_TIME
    assert table["document"].decision is StageDecision.SKIP_THIS_TIME
    assert table["lint"].source == "context"
    assert table["plan"].decision is StageDecision.ALWAYS


def test_derived_defaults_order_signal_context_learned() -> None:
    table = _resolve(
        context="no lint",
        task_signals={"scaffold": True},
        learned={"lint": True, "scaffold": False, "release": False},
    )

    assert table["scaffold"].decision is StageDecision.RUN_THIS_TIME
    assert table["scaffold"].source == "task_signal"
    assert table["lint"].decision is StageDecision.SKIP_THIS_TIME
    assert table["lint"].source == "context"
    assert table["release"].source == "learned"


def test_learned_defaults_never_touch_always_stages() -> None:
    table = _resolve(learned={"plan": False, "implement": False})

    assert table.enabled("plan")
    assert table.enabled("implement")


def test_resolution_is_idempotent() -> None:
    task = Task(id="T", title="t", stage_overrides={"lint": "off"})
    kwargs = {"project_stages": {"review": "always"}, "context": "public sdk"}

    assert _resolve(task, **kwargs) == _resolve(task, **kwargs)


def test_unknown_stage_and_bad_flag_raise_config_error() -> None:
    with pytest.raises(ConfigError):
        _resolve(project_stages={"deploy": "always"})
    with pytest.raises(ConfigError):
        _resolve(Task(id="T", title="t", stage_overrides={"deploy": "run"}))
    with pytest.raises(ConfigError):
        _resolve(Task(id="T", title="t", stage_overrides={"test": "maybe"}))


def test_context_defaults_match_whole_words() -> None:
    assert context_defaults("an sdk for partners") == {"document": True}
    assert context_defaults("sdkless tooling") == {}
