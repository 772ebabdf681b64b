"""Tests for configuration manager."""

import json

import pytest

from editguard.config import (
    ConfigManager,
    ConfigValidationError,
    LocalFileConfigProvider,
    SnapshotConfig,
    create_config_manager,
    get_default_config,
    normalize_strategy,
    validate_config,
)
from editguard.config.schema import deep_merge

# =============================================================================
# Tests for deep_merge and validation
# =============================================================================


def test_deep_merge_basic():
    """Test basic deep merge behavior."""
    base = {"a": 1, "b": {"c": 2, "d": 3}}
    updates = {"b": {"c": 10, "e": 5}}

    result = deep_merge(base, updates)

    assert result["a"] == 1
    assert result["b"] == {"c": 10, "d": 3, "e": 5}
    assert base["b"] == {"c": 2, "d": 3}


def test_deep_merge_none_preserves_value():
    """Test that None in updates preserves base value (skip behavior)."""
    result = deep_merge({"a": 1, "b": 2}, {"a": None})
    assert result == {"a": 1, "b": 2}


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("reject", "strict"),
        ("integrate", "auto-integrate"),
        ("auto_integrate", "auto-integrate"),
        (" Warn ", "warn"),
        ("ignore", "ignore"),
    ],
)
def test_strategy_aliases(raw, expected):
    assert normalize_strategy(raw) == expected
    assert validate_config({"unknown_change_strategy": raw}).unknown_change_strategy == expected


def test_defaults_validate():
    config = validate_config(get_default_config())
    assert config == SnapshotConfig(**get_default_config())
    assert config.detection_enabled


def test_validate_reports_readable_errors():
    with pytest.raises(ConfigValidationError) as exc_info:
        validate_config(
            {"unknown_change_strategy": "panic", "history_default_limit": "many"}
        )
    errors = exc_info.value.errors
    assert any("Unknown strategy" in e for e in errors)
    assert any("Expected integer at 'history_default_limit'" in e for e in errors)


def test_validate_rejects_non_mapping():
    with pytest.raises(ConfigValidationError):
        validate_config(["not", "a", "dict"])


def test_legacy_camel_case_flag():
    assert validate_config({"keepAllCheckpoints": True}).keep_all_checkpoints is True


# =============================================================================
# Tests for the file provider and manager
# =============================================================================


@pytest.mark.asyncio
async def test_missing_file_serves_defaults(tmp_path):
    manager = create_config_manager(tmp_path)
    await manager.initialize()

    assert manager.get_all() == get_default_config()
    assert not (tmp_path / "config.json").exists()


@pytest.mark.asyncio
async def test_file_overrides_defaults_and_overrides(tmp_path):
    (tmp_path / "config.json").write_text(
        json.dumps({"unknown_change_strategy": "reject"}), encoding="utf-8"
    )
    manager = create_config_manager(
        tmp_path, overrides={"unknown_change_strategy": "warn", "keep_all_checkpoints": True}
    )
    await manager.initialize()

    config = manager.typed()
    assert config.unknown_change_strategy == "strict"
    assert config.keep_all_checkpoints is True


@pytest.mark.asyncio
async def test_invalid_json_falls_back_to_defaults(tmp_path):
    (tmp_path / "config.json").write_text("{not json", encoding="utf-8")
    manager = create_config_manager(tmp_path)
    await manager.initialize()
    assert manager.get("unknown_change_strategy") == "warn"


@pytest.mark.asyncio
async def test_invalid_json_keeps_last_valid_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"save_diff_files": False}), encoding="utf-8")
    provider = LocalFileConfigProvider(path, defaults=get_default_config())
    assert (await provider.load())["save_diff_files"] is False

    path.write_text("{broken", encoding="utf-8")
    assert (await provider.load())["save_diff_files"] is False


@pytest.mark.asyncio
async def test_update_persists_only_user_values(tmp_path):
    manager = create_config_manager(tmp_path)
    await manager.initialize()
    seen = []
    manager.register_change_callback(seen.append)

    await manager.update({"unknown_change_strategy": "integrate"})

    saved = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
    assert saved == {"unknown_change_strategy": "auto-integrate"}
    assert manager.typed().unknown_change_strategy == "auto-integrate"
    assert seen and seen[-1]["unknown_change_strategy"] == "integrate"


@pytest.mark.asyncio
async def test_invalid_update_is_not_saved(tmp_path):
    manager = create_config_manager(tmp_path)
    await manager.initialize()

    with pytest.raises(ConfigValidationError):
        await manager.update({"diff_file_format": "pdf"})

    assert not (tmp_path / "config.json").exists()
    assert manager.get("diff_file_format") == "md"


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_others(tmp_path):
    manager = ConfigManager(
        LocalFileConfigProvider(tmp_path / "config.json", defaults={"a": 1})
    )
    await manager.initialize()
    calls = []

    def broken(_config):
        raise RuntimeError("boom")

    manager.register_change_callback(broken)
    manager.register_change_callback(calls.append)
    manager._on_config_changed({"a": 2})

    assert calls == [{"a": 2}]
    assert manager.get("a") == 2


# =============================================================================
# Tests for SnapshotManager configuration
# =============================================================================


@pytest.mark.asyncio
async def test_manager_reads_workspace_config(make_manager, workspace):
    (workspace.state_dir / "config.json").write_text(
        json.dumps({"keep_all_checkpoints": True, "save_diff_files": False}),
        encoding="utf-8",
    )
    manager = make_manager()
    await manager.initialize()

    assert manager.checkpoints.keep_all is True
    assert manager.store.save_diff_files is False


@pytest.mark.asyncio
async def test_invalid_workspace_config_uses_constructor_config(make_manager, workspace):
    (workspace.state_dir / "config.json").write_text(
        json.dumps({"unknown_change_strategy": "panic"}), encoding="utf-8"
    )
    manager = make_manager(unknown_change_strategy="strict")
    await manager.initialize()
    assert manager.config.unknown_change_strategy == "strict"


@pytest.mark.asyncio
async def test_manager_update_config_applies_immediately(make_manager, tracked_edit):
    manager = make_manager()
    updated = await manager.update_config(keep_all_checkpoints=True)
    assert updated.keep_all_checkpoints is True

    for n in range(3):
        await tracked_edit(manager, "a.py", f"v = {n}\n")
    assert manager.checkpoints.info()["count"] == 3

    with pytest.raises(ConfigValidationError):
        await manager.update_config(unknown_change_strategy="panic")
    assert manager.config.keep_all_checkpoints is True


@pytest.mark.asyncio
async def test_watched_file_change_is_applied(make_manager, workspace):
    manager = make_manager()
    await manager.watch_config()
    try:
        (workspace.state_dir / "config.json").write_text(
            json.dumps({"unknown_change_strategy": "integrate"}), encoding="utf-8"
        )
        # Drive the reload the observer would schedule
        await manager.config_manager.provider._handle_file_change()

        assert manager.config.unknown_change_strategy == "auto-integrate"
    finally:
        await manager.stop_watching_config()
    assert manager._watching is False


@pytest.mark.asyncio
async def test_config_change_callback_applies_valid_and_skips_invalid(make_manager):
    manager = make_manager()
    await manager.initialize()

    manager._on_config_changed(
        {**get_default_config(), "exclude_from_checking": ["*.gen.py"]}
    )
    assert manager.ignore.is_ignored("models.gen.py")

    manager._on_config_changed({"unknown_change_strategy": "panic"})
    assert manager.ignore.is_ignored("models.gen.py")
    assert manager.config.unknown_change_strategy == "warn"
