from __future__ import annotations

import logging
from pathlib import Path

import pytest

from runs_manager._logging import get_logger, setup_logging
from runs_manager.models import ConfigError
from runs_manager.settings import (
    Settings,
    load_settings,
    resolve_db_path,
    resolve_settings_path,
)
from runs_manager.utils import split_args, validate_like_pattern


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.strip() + "\n", encoding="utf-8")
    return path


def test_load_settings_parses_known_keys(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "runs.yaml",
        """
image: trainer
docker_run_args: ["--gpus", "all"]
interpreter: python3.12
interpreter_args: ["-u", "-c"]
num_runs: 4
max_workers: 2
kill_label: team=vision
""",
    )

    settings = load_settings(path)

    assert settings.image == "trainer"
    assert settings.docker_run_args == ("--gpus", "all")
    assert settings.interpreter_args == ("-u", "-c")
    assert settings.num_runs == 4
    assert settings.max_workers == 2
    assert settings.kill_label == "team=vision"
    assert settings.mount == "/data"
    assert settings.source == str(path)
    assert settings.to_json()["docker_run_args"] == ["--gpus", "all"]


def test_load_settings_empty_file_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "runs.yaml"
    path.write_text("", encoding="utf-8")

    assert load_settings(path) == Settings(source=str(path))
    assert load_settings(None) == Settings()


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("images: x", "unknown keys"),
        ("- a\n- b", "must contain a mapping"),
        ("num_runs: 0", "num_runs must be >= 1"),
        ("max_workers: true", "max_workers must be an integer"),
        ("image: ''", "image must be a non-empty string"),
        ("docker_run_args: --gpus all", "must be a list"),
        ("image: [unclosed", "Invalid YAML"),
    ],
)
def test_load_settings_rejects_invalid_values(
    tmp_path: Path, content: str, message: str
) -> None:
    path = _write(tmp_path / "runs.yaml", content)
    with pytest.raises(ConfigError, match=message):
        load_settings(path)


def test_resolve_settings_path(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RUNS_SETTINGS", raising=False)
    assert resolve_settings_path(None) is None

    default = _write(tmp_path / "runs.yaml", "image: a")
    assert resolve_settings_path(None) == default.resolve()

    other = _write(tmp_path / "conf" / "other.yaml", "image: b")
    monkeypatch.setenv("RUNS_SETTINGS", str(other))
    assert resolve_settings_path(None) == other.resolve()

    with pytest.raises(ConfigError, match="not found"):
        resolve_settings_path(str(tmp_path / "missing.yaml"))


def test_resolve_db_path_precedence(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RUNS_DB", raising=False)
    settings = Settings(db="from-settings.db")

    assert resolve_db_path(None, Settings()) == (tmp_path / "runs.db").resolve()
    assert resolve_db_path(None, settings) == (tmp_path / "from-settings.db").resolve()
    monkeypatch.setenv("RUNS_DB", "from-env.db")
    assert resolve_db_path(None, settings) == (tmp_path / "from-env.db").resolve()
    assert resolve_db_path("flag.db", settings) == (tmp_path / "flag.db").resolve()


def test_split_args_follows_shell_quoting() -> None:
    assert split_args("--msg 'hello world' -n 2", label="config") == (
        "--msg",
        "hello world",
        "-n",
        "2",
    )
    assert split_args(None, label="config") == ()
    with pytest.raises(ConfigError, match="config"):
        split_args("--msg 'open", label="config")


def test_validate_like_pattern() -> None:
    assert validate_like_pattern("exp\\_%") == "exp\\_%"
    with pytest.raises(ConfigError):
        validate_like_pattern("")
    with pytest.raises(ConfigError, match="dangling escape"):
        validate_like_pattern("exp\\")


def test_setup_logging_levels_and_file_handler(tmp_path: Path, monkeypatch) -> None:
    log_file = tmp_path / "logs" / "runs.log"
    monkeypatch.setenv("RUNS_LOG_LEVEL", "debug")
    monkeypatch.setenv("RUNS_LOG_FILE", str(log_file))

    setup_logging()
    root = logging.getLogger("runs_manager")
    assert root.level == logging.DEBUG

    get_logger("test").info("lifecycle_event step=1")
    for handler in root.handlers:
        handler.flush()
    assert "msg=lifecycle_event step=1" in log_file.read_text(encoding="utf-8")

    monkeypatch.delenv("RUNS_LOG_FILE")
    setup_logging(level="ERROR")
    assert root.level == logging.ERROR
    assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)
