"""Tests for env and YAML configuration plus the action lifecycle table."""
from __future__ import annotations

import pytest

from sandforge.engine.config import RuntimeConfig, fire_event
from sandforge.engine.lifecycle import (
    TERMINAL_STATUSES,
    is_terminal,
    validate_transition,
)
from sandforge.engine.models import ActionStatus
from sandforge.engine.yaml_config import apply_overrides, load_yaml_config


@pytest.fixture
def clean_env(monkeypatch):
    import os
    for key in list(os.environ):
        if key.startswith("SANDFORGE_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults():
    config = RuntimeConfig()
    assert config.project_root == "/home/project"
    assert config.install_attempt_cap == 2
    assert config.start_attempt_cap == 2
    assert config.install_cooldown_seconds == 5.0
    assert config.install_settle_seconds == 10.0
    assert config.artifact_settle_seconds == 2.0
    assert config.install_command is None


def test_from_env_without_overrides(clean_env):
    assert RuntimeConfig.from_env() == RuntimeConfig()


def test_from_env_overrides(clean_env):
    clean_env.setenv("SANDFORGE_PROJECT_ROOT", "/srv/app")
    clean_env.setenv("SANDFORGE_ALTERNATE_ROOTS", "APP, WORK_DIR")
    clean_env.setenv("SANDFORGE_INSTALL_ATTEMPT_CAP", "3")
    clean_env.setenv("SANDFORGE_INSTALL_SETTLE", "0.5")
    clean_env.setenv("SANDFORGE_START_COMMAND", "pnpm dev")
    config = RuntimeConfig.from_env()
    assert config.project_root == "/srv/app"
    assert config.alternate_roots == ("APP", "WORK_DIR")
    assert config.install_attempt_cap == 3
    assert config.install_settle_seconds == 0.5
    assert config.start_command == "pnpm dev"
    assert config.install_command is None


def test_apply_overrides_coerces_and_ignores_unknown():
    config = apply_overrides(
        RuntimeConfig(),
        {"install_attempt_cap": "4", "install_cooldown_seconds": 1,
         "manifest_names": "package.json,deno.json", "bogus": True},
    )
    assert config.install_attempt_cap == 4
    assert config.install_cooldown_seconds == 1.0
    assert config.manifest_names == ("package.json", "deno.json")
    assert not hasattr(config, "bogus")


def test_load_yaml_sections(tmp_path):
    path = tmp_path / "sandforge.yaml"
    path.write_text(
        "runtime:\n"
        "  start_attempt_cap: 5\n"
        "  log_level: DEBUG\n"
        "paths:\n"
        "  project_root: /work\n"
        "  alternate_roots: [ROOT]\n"
        "commands:\n"
        "  install: pnpm install\n"
        "  start: pnpm run dev\n",
        encoding="utf-8",
    )
    config = load_yaml_config(path, base=RuntimeConfig())
    assert config.start_attempt_cap == 5
    assert config.log_level == "DEBUG"
    assert config.project_root == "/work"
    assert config.alternate_roots == ("ROOT",)
    assert config.install_command == "pnpm install"
    assert config.start_command == "pnpm run dev"


def test_load_yaml_empty_file_keeps_base(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    base = RuntimeConfig(install_attempt_cap=7)
    assert load_yaml_config(path, base=base) == base


def test_load_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml", base=RuntimeConfig())


def test_load_yaml_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(path, base=RuntimeConfig())


@pytest.mark.asyncio
async def test_fire_event_swallows_callback_errors():
    seen = []

    async def good(event):
        seen.append(event)

    async def bad(event):
        raise RuntimeError("boom")

    await fire_event(None, {"event": "x"})
    await fire_event(good, {"event": "x"})
    await fire_event(bad, {"event": "x"})
    assert seen == [{"event": "x"}]


def test_valid_transitions():
    validate_transition(ActionStatus.PENDING, ActionStatus.RUNNING)
    validate_transition(ActionStatus.PENDING, ActionStatus.INTERCEPTED)
    validate_transition(ActionStatus.RUNNING, ActionStatus.COMPLETE)
    validate_transition(ActionStatus.RUNNING, ActionStatus.ABORTED)


@pytest.mark.parametrize(
    "current,target",
    [
        (ActionStatus.COMPLETE, ActionStatus.RUNNING),
        (ActionStatus.INTERCEPTED, ActionStatus.RUNNING),
        (ActionStatus.PENDING, ActionStatus.COMPLETE),
        (ActionStatus.FAILED, ActionStatus.ABORTED),
    ],
)
def test_invalid_transitions(current, target):
    with pytest.raises(ValueError, match="Invalid action transition"):
        validate_transition(current, target)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {
        ActionStatus.COMPLETE,
        ActionStatus.FAILED,
        ActionStatus.ABORTED,
        ActionStatus.INTERCEPTED,
    }
    assert not is_terminal(ActionStatus.RUNNING)
