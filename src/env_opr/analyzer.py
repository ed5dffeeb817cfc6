"""Manifest complexity analysis.

Decides whether an environment manifest is risky enough to be installed
under a supervised deadline. Rules are evaluated in order and the first
match wins; the reason names the rule that fired.
"""

import logging
import re
from typing import Any, Optional

import yaml

from config import AnalysisSettings
from env_opr.state import Classification, Complexity
from manifest import Manifest

logger = logging.getLogger(__name__)

STANDARD_REASON = 'standard'

# python=3.6 / python==3.9.7 / python 3.8 / python=3.9.7=h12debd9_1
_PYTHON_PIN = re.compile(r'^python\s*(?:==?|\s)\s*(\d+)\.(\d+)(?:\.(\d+))?')
_NAME_END = re.compile(r'[\s=<>!~\[;@]')


def package_name(entry: str) -> str:
    """Extract the lowercase package name from a conda or pip requirement."""
    entry = entry.strip()
    if '::' in entry:
        entry = entry.split('::', 1)[1]
    return _NAME_END.split(entry, 1)[0].lower()


def _load(manifest: Manifest) -> dict:
    data = yaml.safe_load(manifest.content)
    if not isinstance(data, dict):
        raise ValueError('manifest is empty or not a mapping')
    return data


def _list_field(data: dict, key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list, got {type(value).__name__}")
    return value


def _split_dependencies(dependencies: list) -> tuple[list[str], Optional[list[str]]]:
    """Split dependency entries into (conda entries, pip entries or None)."""
    conda: list[str] = []
    pip: Optional[list[str]] = None
    for entry in dependencies:
        if isinstance(entry, dict):
            if 'pip' in entry:
                pip_entries = entry['pip'] or []
                if not isinstance(pip_entries, list):
                    raise ValueError("'pip' section must be a list")
                pip = (pip or []) + [str(p) for p in pip_entries]
            continue
        conda.append(str(entry))
    return conda, pip


def _channels_complex(channels: list[Any], settings: AnalysisSettings) -> bool:
    names = [str(c).strip().lower() for c in channels]
    if len(names) > settings.max_channels:
        return True
    if any('://' in name for name in names):
        return True
    well_known = set(settings.well_known_channels)
    return len({name for name in names if name in well_known}) >= 2


def legacy_python_pin(entries: list[str]) -> Optional[str]:
    """Return the python pin if it is legacy (<= 3.6) or a full patch pin."""
    for entry in entries:
        match = _PYTHON_PIN.match(entry.strip().lower())
        if not match:
            continue
        major, minor, patch = int(match.group(1)), int(match.group(2)), match.group(3)
        if major < 3 or (major == 3 and minor <= 6) or patch is not None:
            return f'{major}.{minor}.{patch}' if patch is not None else f'{major}.{minor}'
    return None


def _is_problematic(name: str, problematic: list[str]) -> bool:
    return any(name == p or name.startswith(f'{p}-') for p in problematic)


def classify(manifest: Manifest, settings: Optional[AnalysisSettings] = None) -> Classification:
    """Classify a manifest as STANDARD or COMPLEX.

    Never raises: any failure while reading the manifest is reported as
    COMPLEX with an 'analysis error' reason.
    """
    settings = settings or AnalysisSettings()
    if manifest.read_error is not None:
        return Classification(Complexity.COMPLEX, f'analysis error: could not read manifest: {manifest.read_error}')
    try:
        data = _load(manifest)
        dependencies = _list_field(data, 'dependencies')
        channels = _list_field(data, 'channels')
        conda_entries, pip_entries = _split_dependencies(dependencies)

        if len(dependencies) > settings.max_dependencies:
            return Classification(Complexity.COMPLEX, f'many dependencies ({len(dependencies)})')

        if _channels_complex(channels, settings):
            return Classification(Complexity.COMPLEX, 'complex or multiple channels')

        pin = legacy_python_pin(conda_entries)
        if pin:
            return Classification(Complexity.COMPLEX, f'specific/legacy python version ({pin})')

        problematic = [p.lower() for p in settings.problematic_packages]
        for entry in conda_entries + (pip_entries or []):
            name = package_name(entry)
            if _is_problematic(name, problematic):
                return Classification(Complexity.COMPLEX, f'contains problematic package: {name}')

        if pip_entries is not None:
            if len(pip_entries) > settings.max_pip_dependencies:
                return Classification(Complexity.COMPLEX, f'many pip dependencies ({len(pip_entries)})')
            return Classification(Complexity.COMPLEX, 'contains pip dependencies')

        if manifest.size > settings.max_manifest_bytes:
            return Classification(Complexity.COMPLEX, f'manifest is large ({manifest.size} bytes)')

        return Classification(Complexity.STANDARD, STANDARD_REASON)
    except Exception as e:
        logger.warning(f"[{manifest.name}] Analysis failed, treating as complex: {e}")
        return Classification(Complexity.COMPLEX, f'analysis error: {e}')
