"""
Configuration loading, environment overrides and the tracked service registry.
"""
import json
import os
import stat
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import Field, ValidationError, field_validator

from .errors import ConfigValidationError, ServiceNotFoundError
from .models import FrozenModel, RetentionPolicy, Thresholds

APP_NAME = "homestack"
CONFIG_FILENAME = "config.json"

DEFAULT_EXCLUDE_PATTERNS = [
    "*/cache/*",
    "*/Cache/*",
    "*/logs/*",
    "*/log/*",
    "*/Logs/*",
    "*/tmp/*",
    "*/temp/*",
    "*/transcodes/*",
    "*/MediaCover/*",
]

class TrackedService(FrozenModel):
    name: str = Field(..., pattern=r"^[a-zA-Z0-9_.-]+$")
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    host: str = "localhost"

class NetworkPair(FrozenModel):
    source: str
    target: str
    port: int = Field(..., ge=1, le=65535)
    critical: bool = False

class RetentionSettings(FrozenModel):
    max_age_days: int = Field(default=30, ge=0)
    max_count: int = Field(default=10, ge=1)

    def policy(self) -> RetentionPolicy:
        return RetentionPolicy.from_days(self.max_age_days, self.max_count)

class ThresholdSettings(FrozenModel):
    disk: Thresholds = Thresholds(warn=80, critical=90)
    cpu: Thresholds = Thresholds(warn=80, critical=95)
    memory: Thresholds = Thresholds(warn=85, critical=95)

def _default_services() -> List[TrackedService]:
    return [
        TrackedService(name="jellyfin", port=8096),
        TrackedService(name="sonarr", port=8989),
        TrackedService(name="radarr", port=7878),
        TrackedService(name="prowlarr", port=9696),
        TrackedService(name="nzbget", port=6789),
        TrackedService(name="gluetun"),
        TrackedService(name="bazarr", port=6767),
        TrackedService(name="jellyseerr", port=5055),
        TrackedService(name="caddy", port=80),
    ]

def _default_network_pairs() -> List[NetworkPair]:
    return [
        NetworkPair(source="sonarr", target="prowlarr", port=9696),
        NetworkPair(source="radarr", target="prowlarr", port=9696),
        NetworkPair(source="sonarr", target="gluetun", port=6789),
        NetworkPair(source="radarr", target="gluetun", port=6789),
        NetworkPair(source="jellyseerr", target="jellyfin", port=8096),
        NetworkPair(source="jellyseerr", target="sonarr", port=8989),
        NetworkPair(source="jellyseerr", target="radarr", port=7878),
    ]

class StackConfig(FrozenModel):
    config_root: Path = Path("/opt/docker/config")
    backup_root: Path = Path("/mnt/media/backups/configs")
    compose_dir: Path = Path("/opt/brother-eye-media-stack/docker")
    log_dir: Optional[Path] = None
    services: List[TrackedService] = Field(default_factory=_default_services)
    exclude_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    retention: RetentionSettings = RetentionSettings()
    min_free_bytes: int = Field(default=5 * 2**30, ge=0)
    thresholds: ThresholdSettings = ThresholdSettings()
    disk_mounts: List[Path] = Field(default_factory=lambda: [
        Path("/opt/docker/config"),
        Path("/mnt/media"),
        Path("/mnt/media/downloads"),
        Path("/mnt/media/TV"),
        Path("/mnt/media/Movies"),
    ])
    network_pairs: List[NetworkPair] = Field(default_factory=_default_network_pairs)
    vpn_service: Optional[str] = "gluetun"
    vpn_status_url: str = "http://localhost:8000/v1/openvpn/status"
    check_timeout: float = Field(default=5.0, gt=0)
    max_workers: int = Field(default=8, ge=1)
    lock_timeout: float = Field(default=30.0, ge=0)

    @field_validator("services")
    @classmethod
    def unique_services(cls, v: List[TrackedService]) -> List[TrackedService]:
        names = [s.name for s in v]
        if len(names) != len(set(names)):
            raise ValueError("Tracked service names must be unique")
        return v

    @property
    def service_names(self) -> List[str]:
        return [s.name for s in self.services]

    @property
    def audit_dir(self) -> Path:
        return self.log_dir if self.log_dir is not None else get_config_dir()

    def service(self, name: str) -> TrackedService:
        for s in self.services:
            if s.name == name:
                return s
        raise ServiceNotFoundError(f"Service '{name}' is not a tracked service.")

    def resolve_services(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """Validate a service filter against the registry, preserving registry order."""
        if not names:
            return self.service_names
        wanted = list(dict.fromkeys(names))
        for n in wanted:
            self.service(n)
        return [n for n in self.service_names if n in wanted]

    def service_dir(self, name: str) -> Path:
        return self.config_root / name


def get_config_dir() -> Path:
    """Returns the platform-specific configuration directory."""
    xdg_config = os.getenv("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    config_dir = base_dir / APP_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir

def get_config_path() -> Path:
    override = os.getenv("HOMESTACK_CONFIG")
    if override:
        return Path(override)
    return get_config_dir() / CONFIG_FILENAME

def apply_secure_permissions(path: Path) -> None:
    """Apply chmod 600 equivalent permissions to a file."""
    if sys.platform != "win32":
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)

# env var -> (dotted config key, converter)
ENV_OVERRIDES = {
    "HOMESTACK_CONFIG_ROOT": ("config_root", str),
    "HOMESTACK_BACKUP_ROOT": ("backup_root", str),
    "HOMESTACK_COMPOSE_DIR": ("compose_dir", str),
    "HOMESTACK_LOG_DIR": ("log_dir", str),
    "HOMESTACK_RETENTION_DAYS": ("retention.max_age_days", int),
    "HOMESTACK_RETENTION_COUNT": ("retention.max_count", int),
    "HOMESTACK_MIN_FREE_GB": ("min_free_bytes", lambda v: int(float(v) * 2**30)),
    "HOMESTACK_DISK_WARN": ("thresholds.disk.warn", float),
    "HOMESTACK_DISK_CRITICAL": ("thresholds.disk.critical", float),
    "HOMESTACK_CPU_WARN": ("thresholds.cpu.warn", float),
    "HOMESTACK_CPU_CRITICAL": ("thresholds.cpu.critical", float),
    "HOMESTACK_MEMORY_WARN": ("thresholds.memory.warn", float),
    "HOMESTACK_MEMORY_CRITICAL": ("thresholds.memory.critical", float),
    "HOMESTACK_CHECK_TIMEOUT": ("check_timeout", float),
}

def _set_dotted(data: Dict, dotted: str, value: object) -> None:
    parts = dotted.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value

def apply_env_overrides(data: Dict, environ: Optional[Mapping[str, str]] = None) -> Dict:
    """Overlay HOMESTACK_* environment variables on raw config data."""
    env = os.environ if environ is None else environ
    merged = json.loads(json.dumps(data))
    # Partial threshold overrides need the defaults of the untouched bound.
    defaults = ThresholdSettings().model_dump()
    for var, (key, convert) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError as e:
            raise ConfigValidationError(f"Invalid value for {var}: {raw!r}") from e
        if key.startswith("thresholds."):
            _, metric, _bound = key.split(".")
            thresholds = merged.setdefault("thresholds", {})
            thresholds.setdefault(metric, dict(defaults[metric]))
        _set_dotted(merged, key, value)
    return merged

def load_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> StackConfig:
    """Load the stack configuration from disk, then apply environment overrides."""
    path = Path(path) if path is not None else get_config_path()
    data: Dict = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigValidationError(f"Failed to read config '{path}': {e}") from e
        if not isinstance(data, dict):
            raise ConfigValidationError(f"Config '{path}' must contain a JSON object.")

    data = apply_env_overrides(data, environ)
    try:
        return StackConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid configuration: {e}") from e

def save_config(config: StackConfig, path: Optional[Path] = None) -> Path:
    """Write the configuration as JSON with owner-only permissions."""
    path = Path(path) if path is not None else get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(config.model_dump_json(indent=2))
    apply_secure_permissions(path)
    return path

def validate_registry(config: StackConfig, known: Optional[Iterable[str]]) -> List[str]:
    """Return tracked services the controller does not know about."""
    if known is None:
        return []
    known_set = set(known)
    return [name for name in config.service_names if name not in known_set]
