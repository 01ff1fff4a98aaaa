# tests/test_config.py
from pathlib import Path

import pytest

from flowcore.config import load_settings


def test_defaults(monkeypatch):
    for name in ("FLOWCORE_DB_PATH", "FLOWCORE_RUNNER_COMMAND", "FLOWCORE_LOOP_MAX_ATTEMPTS", "FLOWCORE_WORK_DIR"):
        monkeypatch.delenv(name, raising=False)

    s = load_settings()

    assert s.db_path == Path("./var/flowcore.db")
    assert s.runner_command == "{instructions}"
    assert s.loop_max_attempts == 3
    assert s.work_dir is None


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("FLOWCORE_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("FLOWCORE_LOOP_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("FLOWCORE_LOG_LEVEL", "DEBUG")

    s = load_settings()

    assert s.db_path == tmp_path / "x.db"
    assert s.loop_max_attempts == 7
    assert s.log_level == "debug"


@pytest.mark.parametrize(
    "name,value",
    [
        ("FLOWCORE_LOOP_MAX_ATTEMPTS", "0"),
        ("FLOWCORE_LOOP_MAX_ATTEMPTS", "many"),
        ("FLOWCORE_CHECKPOINT_INTERVAL_S", "-1"),
        ("FLOWCORE_RUNNER_WORKERS", "0"),
        ("FLOWCORE_PORT", "70000"),
        ("FLOWCORE_LOOP_RULES_FILE", "/nonexistent/rules.json"),
    ],
)
def test_invalid_values_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_settings()
