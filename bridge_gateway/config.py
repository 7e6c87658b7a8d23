"""Gateway configuration: environment settings plus the YAML backend/process registry."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    config_path: str = "config/gateway.yaml"
    log_level: str = "INFO"
    host: str = "127.0.0.1"

    model_config = {"env_prefix": "BRIDGE_"}


_MEMORY_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[KMG]?)B?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}


def parse_memory_size(raw: int | str | None) -> int | None:
    """Convert "500M" / "1G" / 1048576 into a byte count."""
    if raw is None or isinstance(raw, int):
        return raw
    match = _MEMORY_RE.match(str(raw))
    if not match:
        raise ValueError(f"Invalid memory size: {raw!r}")
    return int(float(match.group("value")) * _MEMORY_UNITS[match.group("unit").upper()])


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BackendDescriptor(_Frozen):
    name: str
    service: str
    transport: Literal["cli", "http"]
    port: int = Field(..., gt=0, lt=65536)
    default_model: str
    display_name: str = ""

    # cli transport
    command: tuple[str, ...] = ("gemini",)
    credential_path: str = "~/.gemini/oauth_creds.json"
    login_hint: str = "Run: gemini auth --login"
    sync_flag: str = "--no-stream"
    stream_flag: str = "--stream"

    # http transport
    daemon_url: str = "http://localhost:11434"
    readiness_timeout_seconds: float = 2.0
    request_timeout_seconds: float = 300.0

    @property
    def label(self) -> str:
        return self.display_name or self.name

    @property
    def credential_file(self) -> Path:
        return Path(self.credential_path).expanduser()


class ServiceEndpoint(_Frozen):
    name: str
    url: str


class MonitorConfig(_Frozen):
    interval_seconds: float = Field(default=30.0, gt=0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    log_file: str = "logs/health.log"
    extra_services: tuple[ServiceEndpoint, ...] = ()


class BackoffPolicy(_Frozen):
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    window_seconds: float = Field(default=300.0, gt=0)
    max_restarts_in_window: int = Field(default=10, ge=0)

    def delay_for(self, recent_crashes: int) -> float:
        if recent_crashes <= 0:
            return 0.0
        return min(self.initial_delay_seconds * 2 ** (recent_crashes - 1), self.max_delay_seconds)


class SupervisorConfig(_Frozen):
    log_dir: str = "logs"
    check_interval_seconds: float = Field(default=5.0, gt=0)
    stop_grace_seconds: float = Field(default=5.0, gt=0)
    backoff: BackoffPolicy = BackoffPolicy()


class ProcessSpec(_Frozen):
    name: str
    command: tuple[str, ...] = Field(..., min_length=1)
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    autorestart: bool = True
    max_memory: int | None = None
    cron_restart: str | None = None

    @field_validator("max_memory", mode="before")
    @classmethod
    def _parse_max_memory(cls, value):
        return parse_memory_size(value)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value):
        if value is None:
            return {}
        return {str(k): str(v) for k, v in dict(value).items()}


class GatewayConfig(_Frozen):
    backends: dict[str, BackendDescriptor] = Field(default_factory=dict)
    monitor: MonitorConfig = MonitorConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    processes: tuple[ProcessSpec, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _inject_backend_names(cls, data):
        if isinstance(data, dict) and isinstance(data.get("backends"), dict):
            data = dict(data)
            data["backends"] = {
                name: {"name": name, **(entry or {})}
                for name, entry in data["backends"].items()
            }
        return data

    @model_validator(mode="after")
    def _unique_process_names(self):
        names = [spec.name for spec in self.processes]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate process names: {', '.join(duplicates)}")
        return self

    def get_backend(self, name: str) -> BackendDescriptor:
        backend = self.backends.get(name)
        if backend is None:
            raise KeyError(f"Backend not found in config: {name}")
        return backend

    def monitored_services(self) -> list[ServiceEndpoint]:
        """Every bridge's /health endpoint followed by the extra endpoints."""
        services = [
            ServiceEndpoint(name=backend.service, url=f"http://127.0.0.1:{backend.port}/health")
            for backend in self.backends.values()
        ]
        services.extend(self.monitor.extra_services)
        return services


def load_gateway_config(path: str | Path) -> GatewayConfig:
    """Load and validate the gateway registry from YAML."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config not found: {config_path}")
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    return GatewayConfig.model_validate(raw)
