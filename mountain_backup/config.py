import glob
import os
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union


class Config:
    """Process configuration read from the environment"""

    # Backup configuration files (glob patterns, os.pathsep separated)
    CONFIG_PATHS = [
        p for p in os.environ.get('MOUNTAIN_BACKUP_CONFIG', '').split(os.pathsep) if p
    ] or ['./*.toml', '/etc/mountain-backup/*.toml']

    # Staging
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/var/tmp'

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
    LOG_DIR = os.environ.get('LOG_DIR') or None


class ConfigError(Exception):
    """Raised when backup configuration cannot be loaded or is invalid."""
    pass


@dataclass(frozen=True)
class FilesSourceConfig:
    """A local file tree to back up."""

    key: str
    root: str
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    follow_symlinks: bool = False
    skip_special: bool = True
    prefix: str = ''
    timeout: Optional[float] = None

    kind = 'files'

    @property
    def source_id(self) -> str:
        return f"{self.kind}.{self.key}"


@dataclass(frozen=True)
class PrometheusSourceConfig:
    """A metrics server endpoint whose response body is stored as one entry."""

    key: str
    url: str
    params: Tuple[Tuple[str, str], ...] = ()
    timeout: float = 30.0
    extension: str = 'json'

    kind = 'prometheus'

    @property
    def source_id(self) -> str:
        return f"{self.kind}.{self.key}"


SourceConfig = Union[FilesSourceConfig, PrometheusSourceConfig]


@dataclass(frozen=True)
class UploadConfig:
    endpoint: str
    bucket: str
    key_id: str
    secret_access_key: str
    format: str = '%Y-%m-%d-%H-%M-%S'
    region: str = 'us-east-1'
    secure: bool = True
    content_type: str = 'application/x-tar'


@dataclass(frozen=True)
class MetricsConfig:
    enabled: bool = False
    push_gateway_host: str = ''
    label_host: str = ''
    timeout: float = 10.0


@dataclass(frozen=True)
class BackupConfig:
    """Validated, immutable backup configuration for one run."""

    sources: Tuple[SourceConfig, ...]
    upload: UploadConfig
    metrics: MetricsConfig = field(default_factory=MetricsConfig)


def _merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge update into base; tables merge, everything else is replaced."""
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _require(section: Dict[str, Any], key: str, where: str) -> Any:
    if key not in section or section[key] in (None, ''):
        raise ConfigError(f"Missing required key '{key}' in [{where}]")
    return section[key]


def _flag(section: Dict[str, Any], key: str, default: bool, where: str) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' in [{where}] must be true or false, got {value!r}")
    return value


def _patterns(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"Patterns in [{where}] must be a string or list of strings")
    return tuple(value)


def _files_source(key: str, section: Dict[str, Any]) -> FilesSourceConfig:
    where = f"files.{key}"
    timeout = section.get('timeout')
    return FilesSourceConfig(
        key=key,
        root=str(_require(section, 'root', where)),
        include=_patterns(section.get('include'), where),
        exclude=_patterns(section.get('exclude'), where),
        follow_symlinks=_flag(section, 'follow_symlinks', False, where),
        skip_special=_flag(section, 'skip_special', True, where),
        prefix=str(section.get('prefix', '')),
        timeout=float(timeout) if timeout is not None else None
    )


def _prometheus_source(key: str, section: Dict[str, Any]) -> PrometheusSourceConfig:
    where = f"prometheus.{key}"
    params = section.get('params', {})
    if not isinstance(params, dict):
        raise ConfigError(f"'params' in [{where}] must be a table")
    return PrometheusSourceConfig(
        key=key,
        url=str(_require(section, 'url', where)),
        params=tuple((str(k), str(v)) for k, v in params.items()),
        timeout=float(section.get('timeout', 30.0)),
        extension=str(section.get('extension', 'json'))
    )


# Source kinds in the order their builder is looked up
SOURCE_BUILDERS = {
    'files': _files_source,
    'prometheus': _prometheus_source
}


def parse_config(data: Dict[str, Any]) -> BackupConfig:
    """
    Build a BackupConfig from parsed TOML data.

    Sources are grouped by kind, kinds in the order their first section
    appears; within a kind, sections keep document order.

    Raises:
        ConfigError: If a required section or key is missing
    """
    sources: List[SourceConfig] = []

    for kind, tables in data.items():
        builder = SOURCE_BUILDERS.get(kind)
        if builder is None:
            continue
        if not isinstance(tables, dict):
            raise ConfigError(f"[{kind}] must contain named tables, e.g. [{kind}.name]")
        for key, section in tables.items():
            if not isinstance(section, dict):
                raise ConfigError(f"[{kind}.{key}] must be a table")
            sources.append(builder(key, section))

    upload_section = data.get('upload')
    if not isinstance(upload_section, dict):
        raise ConfigError("Missing [upload] section")

    upload = UploadConfig(
        endpoint=str(_require(upload_section, 'endpoint', 'upload')),
        bucket=str(_require(upload_section, 'bucket', 'upload')),
        key_id=str(_require(upload_section, 'key_id', 'upload')),
        secret_access_key=str(_require(upload_section, 'secret_access_key', 'upload')),
        format=str(upload_section.get('format', UploadConfig.format)),
        region=str(upload_section.get('region', UploadConfig.region)),
        secure=_flag(upload_section, 'secure', True, 'upload'),
        content_type=str(upload_section.get('content_type', UploadConfig.content_type))
    )

    metrics_section = data.get('metrics', {})
    if not isinstance(metrics_section, dict):
        raise ConfigError("[metrics] must be a table")

    metrics = MetricsConfig(
        enabled=_flag(metrics_section, 'enabled', False, 'metrics'),
        push_gateway_host=str(metrics_section.get('push_gateway_host', '')),
        label_host=str(metrics_section.get('label_host', '')),
        timeout=float(metrics_section.get('timeout', MetricsConfig.timeout))
    )

    if metrics.enabled:
        _require(metrics_section, 'push_gateway_host', 'metrics')
        _require(metrics_section, 'label_host', 'metrics')

    return BackupConfig(sources=tuple(sources), upload=upload, metrics=metrics)


def find_config_files(patterns: List[str]) -> List[str]:
    """Expand glob patterns into a sorted, de-duplicated list of files."""
    found = []
    for pattern in patterns:
        for path in sorted(glob.glob(os.path.expanduser(pattern))):
            if os.path.isfile(path) and path not in found:
                found.append(path)
    return found


def load_config(patterns: Optional[List[str]] = None) -> BackupConfig:
    """
    Load and merge every TOML file matching the given glob patterns.

    Args:
        patterns: Glob patterns (defaults to Config.CONFIG_PATHS)

    Returns:
        BackupConfig

    Raises:
        ConfigError: If no file matches, a file cannot be parsed, or the
            merged result is invalid
    """
    patterns = patterns or Config.CONFIG_PATHS
    files = find_config_files(patterns)

    if not files:
        raise ConfigError(f"No configuration files found (searched: {', '.join(patterns)})")

    data: Dict[str, Any] = {}
    for path in files:
        try:
            with open(path, 'rb') as f:
                _merge(data, tomllib.load(f))
        except OSError as e:
            raise ConfigError(f"Failed to read {path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    try:
        return parse_config(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
