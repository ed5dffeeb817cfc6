"""Run configuration.

Settings come from three layers, later layers winning:
1. Built-in defaults (the Settings dataclass)
2. Optional YAML file (--config, or ENVKEEPER_CONFIG)
3. CLI flags (applied by cli.py)

Example config file:

    manifest_dir: ~/backups/conda
    timeout: 900
    solver: libmamba
    install_root: /opt/envs
    analysis:
      max_dependencies: 30
      problematic_packages: [tensorflow, gdal]
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_MANIFEST_DIR = 'conda_environments'
DEFAULT_TIMEOUT = 600
DEFAULT_SOLVER = 'libmamba'
DEFAULT_CHANNEL_URL = 'https://conda.anaconda.org'

# Packages with a history of slow or failing solves (native/GPU/geospatial stacks)
DEFAULT_PROBLEMATIC_PACKAGES = [
    'tensorflow',
    'tensorflow-gpu',
    'pytorch',
    'torch',
    'cudatoolkit',
    'cudnn',
    'gdal',
    'geopandas',
    'cartopy',
    'rasterio',
    'fiona',
    'proj',
    'basemap',
    'opencv',
    'mkl',
    'pyqt',
    'r-base',
]

# Channels that pin their own builds; mixing two of them is a frequent solver trap
DEFAULT_WELL_KNOWN_CHANNELS = ['conda-forge', 'bioconda', 'pytorch', 'nvidia', 'intel']


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class AnalysisSettings:
    """Thresholds used to decide whether a manifest is COMPLEX."""
    max_dependencies: int = 20
    max_channels: int = 3
    max_pip_dependencies: int = 5
    max_manifest_bytes: int = 2048
    problematic_packages: list = field(default_factory=lambda: list(DEFAULT_PROBLEMATIC_PACKAGES))
    well_known_channels: list = field(default_factory=lambda: list(DEFAULT_WELL_KNOWN_CHANNELS))


@dataclass
class Settings:
    """Configuration for one envkeeper invocation."""
    manifest_dir: Path = field(default_factory=lambda: Path(DEFAULT_MANIFEST_DIR))
    timeout: int = DEFAULT_TIMEOUT
    upgrade: bool = False
    solver: str = DEFAULT_SOLVER
    install_root: Optional[Path] = None
    report_dir: Path = field(default_factory=Path.cwd)
    conda: Optional[str] = None
    channel_url: str = DEFAULT_CHANNEL_URL
    kill_grace: float = 5.0
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)

    def __post_init__(self):
        if isinstance(self.manifest_dir, str):
            self.manifest_dir = Path(self.manifest_dir).expanduser()
        if isinstance(self.report_dir, str):
            self.report_dir = Path(self.report_dir).expanduser()
        if isinstance(self.install_root, str):
            self.install_root = Path(self.install_root).expanduser()
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")


def get_config_path(path: Optional[str] = None) -> Optional[Path]:
    """Resolve the config file path from the argument or ENVKEEPER_CONFIG."""
    value = path or os.environ.get('ENVKEEPER_CONFIG')
    if not value:
        return None
    return Path(value).expanduser()


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file into a dict."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def _check_keys(data: dict, allowed: set, where: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"Unknown keys in {where}: {', '.join(unknown)}")


def _typed(value, expected: type, key: str):
    if expected is int and isinstance(value, bool):
        raise ConfigError(f"{key}: expected int, got bool")
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, expected):
        raise ConfigError(f"{key}: expected {expected.__name__}, got {type(value).__name__}")
    return value


def settings_from_dict(data: dict) -> Settings:
    """Build Settings from a parsed config mapping.

    Raises:
        ConfigError: On unknown keys or wrongly typed values
    """
    top_keys = {f.name for f in fields(Settings)} - {'upgrade'}
    _check_keys(data, top_keys, 'config')

    analysis_data = data.get('analysis') or {}
    if not isinstance(analysis_data, dict):
        raise ConfigError("analysis: expected a mapping")
    _check_keys(analysis_data, {f.name for f in fields(AnalysisSettings)}, 'analysis')

    analysis = AnalysisSettings()
    for key in ('max_dependencies', 'max_channels', 'max_pip_dependencies', 'max_manifest_bytes'):
        if key in analysis_data:
            setattr(analysis, key, _typed(analysis_data[key], int, f'analysis.{key}'))
    for key in ('problematic_packages', 'well_known_channels'):
        if key in analysis_data:
            items = _typed(analysis_data[key], list, f'analysis.{key}')
            setattr(analysis, key, [str(item).lower() for item in items])

    kwargs: dict = {'analysis': analysis}
    for key in ('manifest_dir', 'report_dir', 'install_root'):
        if data.get(key) is not None:
            kwargs[key] = Path(str(_typed(data[key], str, key))).expanduser()
    if 'timeout' in data:
        kwargs['timeout'] = _typed(data['timeout'], int, 'timeout')
    if 'kill_grace' in data:
        kwargs['kill_grace'] = _typed(data['kill_grace'], float, 'kill_grace')
    for key in ('solver', 'conda', 'channel_url'):
        if data.get(key) is not None:
            kwargs[key] = _typed(data[key], str, key)

    return Settings(**kwargs)


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from the config file, or defaults when there is none.

    Raises:
        ConfigError: If an explicitly named file is missing or invalid
    """
    config_path = get_config_path(path)
    if config_path is None:
        return Settings()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    return settings_from_dict(_parse_yaml(config_path))
