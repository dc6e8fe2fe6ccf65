import json, pathlib
from pydantic import BaseModel, Field, ValidationError

from arowss.errors import ConfigError
from arowss.pipeline_spec import PipelineSpec


class ToolSettings(BaseModel):
    capture_binary: str = "libcamera-vid"
    encoder_binary: str = "/usr/bin/ffmpeg"
    sensor_mode: str | None = "1920:1080:8"
    hdr: bool = True
    encoders: dict[str, str] = {"h264": "h264_v4l2m2m", "mjpeg": "mjpeg"}
    service_provider: str = "arowss"
    ffmpeg_loglevel: str = "error"


class SupervisorSettings(BaseModel):
    startup_timeout: float = Field(default=3.0, gt=0)
    startup_settle: float = Field(default=1.0, ge=0)
    stop_timeout: float = Field(default=2.0, gt=0)
    stderr_tail_lines: int = Field(default=20, ge=1)


class LinkSettings(BaseModel):
    probe_host: str = "192.168.199.1"
    interface: str | None = "wlan0"
    sample_interval: float = Field(default=2.0, gt=0)
    ping_count: int = Field(default=3, ge=1)
    ping_timeout: float = Field(default=1.0, gt=0)
    sample_timeout: float = Field(default=5.0, gt=0)


class ControllerSettings(BaseModel):
    tick_interval: float = Field(default=1.0, gt=0)
    hysteresis_margin: int = Field(default=1, ge=1)
    hold_samples: int = Field(default=2, ge=1)
    backoff_initial: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_max: float = Field(default=30.0, ge=0)
    max_start_attempts: int = Field(default=5, ge=1)
    stable_after: float = Field(default=30.0, ge=0)
    shutdown_timeout: float = Field(default=10.0, gt=0)


class UplinkSettings(BaseModel):
    enabled: bool = False
    port: str = "/dev/ttyAMA2"
    baudrate: int = Field(default=57600, gt=0)


class Settings(BaseModel):
    pipeline: PipelineSpec
    tools: ToolSettings = ToolSettings()
    supervisor: SupervisorSettings = SupervisorSettings()
    link: LinkSettings = LinkSettings()
    controller: ControllerSettings = ControllerSettings()
    uplink: UplinkSettings = UplinkSettings()
    trusted_clients: list[str] = ["127.0.0.1", "192.168.199."]
    host: str = "0.0.0.0"
    port: int = 9000
    log_file_path: str = "arowss.log"


def load_config(path="config.json") -> Settings:
    try:
        raw = json.loads(pathlib.Path(path).read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    try:
        return Settings(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
