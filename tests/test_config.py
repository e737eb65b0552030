from pathlib import Path

import pytest

from dumpstate.config import load_config


def test_load_config_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "output:\n  directory: ./out\n"
        "board:\n  completion_timeout: 5\n"
        "pipeline:\n  skip_phases: [STACK_TRACE_COLLECTION]\n",
        encoding="utf-8",
    )
    config = load_config(config_path)
    assert config.output.directory.name == "out"
    assert config.board.completion_timeout == 5.0
    assert config.board.kill_timeout == 10.0
    assert config.pipeline.skip_phases == ["STACK_TRACE_COLLECTION"]


def test_load_config_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text('{"consent": {"timeout_ms": 1000}, "version": "3.0"}', encoding="utf-8")
    config = load_config(config_path)
    assert config.consent.timeout_ms == 1000
    assert config.version == "3.0"


def test_defaults() -> None:
    config = load_config(None)
    assert config.progress.default_max == 5000
    assert config.traces.max_consecutive_failures == 3
    assert config.stats_path == Path("./bugreports") / "dumpstate-stats.txt"


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_invalid_config_raises_value_error(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("progress:\n  default_max: lots\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid config"):
        load_config(config_path)
