from __future__ import annotations

import json
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError


class OutputConfig(BaseModel):
    directory: Path = Field(default=Path("./bugreports"))
    stats_filename: str = "dumpstate-stats.txt"
    socket_dir: Path = Field(default=Path("/dev/socket"))


class ProgressConfig(BaseModel):
    growth_factor: float = 1.1
    default_max: int = 5000


class ConsentConfig(BaseModel):
    timeout_ms: int = 30_000
    poll_interval_ms: int = 500


class BoardConfig(BaseModel):
    completion_timeout: float = 30.0
    kill_timeout: float = 10.0
    files: list[str] = Field(
        default_factory=lambda: ["dumpstate_board.txt", "dumpstate_board.bin"]
    )
    restart_property: str = "ctl.interface_restart"
    interface_name: str = "android.hardware.dumpstate@1.0::IDumpstateDevice/default"


class TracesConfig(BaseModel):
    managed_timeout: float = 5.0
    native_timeout: float = 20.0
    max_consecutive_failures: int = 3
    traces_dir: Path = Field(default=Path("/data/anr"))
    tombstones_dir: Path = Field(default=Path("/data/tombstones"))
    managed_executables: list[str] = Field(
        default_factory=lambda: ["/system/bin/app_process32", "/system/bin/app_process64"]
    )
    native_executables: list[str] = Field(
        default_factory=lambda: [
            "/system/bin/audioserver",
            "/system/bin/cameraserver",
            "/system/bin/drmserver",
            "/system/bin/mediadrmserver",
            "/system/bin/mediaextractor",
            "/system/bin/mediaserver",
            "/system/bin/sdcard",
            "/system/bin/statsd",
            "/system/bin/surfaceflinger",
            "/system/bin/vold",
            "/apex/com.android.media.swcodec/bin/mediaswcodec",
        ]
    )


class PipelineConfig(BaseModel):
    skip_phases: list[str] = Field(default_factory=list)
    shell_uid: int = 2000
    shell_gid: int = 2000


class DumpstateConfig(BaseModel):
    output: OutputConfig = Field(default_factory=OutputConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    board: BoardConfig = Field(default_factory=BoardConfig)
    traces: TracesConfig = Field(default_factory=TracesConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    version: str = "default"
    verbosity: int = 0

    @property
    def stats_path(self) -> Path:
        return self.output.directory / self.output.stats_filename


def load_config(path: Path | None) -> DumpstateConfig:
    if path is None:
        return DumpstateConfig()
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    content = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(content) or {}
    else:
        data = json.loads(content)
    try:
        return DumpstateConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid config: {exc}") from exc
