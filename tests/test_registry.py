from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from stageflow.models import RegistryKind
from stageflow.registry import ContextRegistry
from stageflow.state import StateStore


def test_merge_adds_and_replaces_by_key(tmp_path: Path) -> None:
    registry = ContextRegistry(StateStore(tmp_path))
    registry.merge(RegistryKind.MODULES, {"auth": {"path": "src/auth"}, "billing": {"path": "b"}})
    registry.merge(RegistryKind.MODULES, {"billing": {"path": "src/billing"}})

    assert registry.get(RegistryKind.MODULES, "auth") == {"path": "src/auth"}
    assert registry.get(RegistryKind.MODULES, "billing") == {"path": "src/billing"}
    assert registry.get(RegistryKind.MODULES, "search") is None
    assert registry.keys(RegistryKind.MODULES) == ["auth", "billing"]


def test_prefix_query_is_sorted_and_scoped_to_kind(tmp_path: Path) -> None:
    registry = ContextRegistry(StateStore(tmp_path))
    registry.merge(
        RegistryKind.COMPONENTS,
        {"ui.button": {"v": 2}, "ui.avatar": {"v": 1}, "core.cache": {"v": 1}},
    )
    registry.merge(RegistryKind.ENTITIES, {"ui.user": {"v": 1}})

    assert list(registry.prefix(RegistryKind.COMPONENTS, "ui.")) == ["ui.avatar", "ui.button"]
    assert list(registry.prefix(RegistryKind.COMPONENTS)) == [
        "core.cache",
        "ui.avatar",
        "ui.button",
    ]


def test_concurrent_writers_to_different_keys_keep_both(tmp_path: Path) -> None:
    registry = ContextRegistry(StateStore(tmp_path))
    keys = [f"dep-{index}" for index in range(8)]

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(
            pool.map(
                lambda key: registry.merge(RegistryKind.DEPENDENCIES, {key: {"version": "1.0"}}),
                keys,
            )
        )

    assert registry.keys(RegistryKind.DEPENDENCIES) == sorted(keys)


def test_snapshot_covers_every_kind(tmp_path: Path) -> None:
    registry = ContextRegistry(StateStore(tmp_path))
    registry.merge(RegistryKind.CONVENTIONS, {"naming": {"style": "snake_case"}})

    snapshot = registry.snapshot()

    assert set(snapshot) == {kind.value for kind in RegistryKind}
    assert snapshot["conventions"] == {"naming": {"style": "snake_case"}}
    assert snapshot["capabilities"] == {}


def test_each_key_is_its_own_document(tmp_path: Path) -> None:
    state = StateStore(tmp_path)
    registry = ContextRegistry(state)

    registry.merge(RegistryKind.MODULES, {"auth": {"path": "a"}, "web/ui": {"path": "w"}})
    registry.merge(RegistryKind.MODULES, {"web/ui": {"path": "src/web/ui"}})

    assert state.get_envelope("modules", key="auth")["revision"] == 2
    assert state.get_envelope("modules", key="web/ui")["revision"] == 3
    assert (tmp_path / "state" / "modules" / "web%2Fui.json").exists()
    assert registry.keys(RegistryKind.MODULES) == ["auth", "web/ui"]
    assert registry.prefix(RegistryKind.MODULES, "web/") == {"web/ui": {"path": "src/web/ui"}}
