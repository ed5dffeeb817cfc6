"""Pre-flight validation checks.

Checks that run before an import, catching setup problems early with
actionable messages: conda present, manifests readable, channels
reachable.
"""

import logging
from pathlib import Path
from typing import Optional

import requests
import yaml

from common import ManagerNotFoundError, ManifestDirectoryMissingError, run_command
from config import Settings
from env_opr.analyzer import classify
from manager import find_conda
from manifest import Manifest, discover_manifests

logger = logging.getLogger(__name__)

# Channel aliases that are not served from the channel_url host
SKIPPED_CHANNELS = {'defaults', 'nodefaults'}


# -----------------------------------------------------------------------------
# Manager
# -----------------------------------------------------------------------------

def validate_manager(explicit: Optional[str] = None) -> tuple[list[str], list[str]]:
    """Check that conda can be located and runs.

    Returns:
        (passed, failed) message lists
    """
    try:
        conda = find_conda(explicit)
    except ManagerNotFoundError as e:
        return [], [str(e)]

    rc, out, err = run_command([conda, '--version'], timeout=30)
    if rc != 0:
        return [], [f"{conda} --version failed\n  {(err or out).strip()}"]
    return [f"conda found: {conda} ({out.strip() or err.strip()})"], []


# -----------------------------------------------------------------------------
# Manifests
# -----------------------------------------------------------------------------

def validate_manifests(settings: Settings) -> tuple[list[str], list[str], list[Manifest]]:
    """Check the manifest directory and that every manifest can be analyzed.

    Returns:
        (passed, failed, manifests)
    """
    try:
        manifests = discover_manifests(settings.manifest_dir)
    except ManifestDirectoryMissingError as e:
        return [], [f"{e}\n  Run 'envkeeper export --dir {settings.manifest_dir}' first, "
                    f"or pass --dir"], []

    if not manifests:
        return [], [f"No *.yml/*.yaml manifests in {settings.manifest_dir}"], []

    passed, failed = [], []
    complex_count = 0
    for manifest in manifests:
        classification = classify(manifest, settings.analysis)
        if classification.reason.startswith('analysis error'):
            failed.append(f"{manifest.path.name}: {classification.reason}")
        elif classification.is_complex:
            complex_count += 1
    passed.append(f"{len(manifests)} manifest(s) in {settings.manifest_dir} "
                  f"({complex_count} complex)")
    return passed, failed, manifests


# -----------------------------------------------------------------------------
# Channels
# -----------------------------------------------------------------------------

def manifest_channels(manifests: list[Manifest]) -> list[str]:
    """Collect the distinct channels named across manifests, in first-seen order."""
    channels: list[str] = []
    for manifest in manifests:
        try:
            data = yaml.safe_load(manifest.content)
        except yaml.YAMLError:
            continue
        if not isinstance(data, dict) or not isinstance(data.get('channels'), list):
            continue
        for channel in data['channels']:
            channel = str(channel).strip()
            if channel and channel not in channels:
                channels.append(channel)
    return channels


def channel_check_url(channel: str, channel_url: str) -> str:
    """URL of the channel's noarch repodata, used to check reachability."""
    base = channel if '://' in channel else f"{channel_url.rstrip('/')}/{channel}"
    return f"{base.rstrip('/')}/noarch/repodata.json"


def validate_channel_reachable(channel: str, channel_url: str, timeout: float = 10.0) -> tuple[bool, str]:
    """Check a channel with an HTTP HEAD request.

    Returns:
        (reachable, message)
    """
    url = channel_check_url(channel, channel_url)
    try:
        resp = requests.head(url, timeout=timeout, allow_redirects=True)
    except requests.RequestException as e:
        return False, f"Channel '{channel}' unreachable: {e}"
    if resp.status_code >= 400:
        return False, f"Channel '{channel}' returned HTTP {resp.status_code} ({url})"
    return True, f"Channel '{channel}' reachable"


# -----------------------------------------------------------------------------
# Combined
# -----------------------------------------------------------------------------

def run_preflight_checks(settings: Settings, check_network: bool = True) -> tuple[bool, dict]:
    """Run all preflight checks.

    Returns:
        (success, results) tuple where results maps area -> {'passed', 'failed'}
    """
    results: dict[str, dict[str, list[str]]] = {
        'manager': {'passed': [], 'failed': []},
        'manifests': {'passed': [], 'failed': []},
        'channels': {'passed': [], 'failed': []},
    }

    passed, failed = validate_manager(settings.conda)
    results['manager']['passed'].extend(passed)
    results['manager']['failed'].extend(failed)

    passed, failed, manifests = validate_manifests(settings)
    results['manifests']['passed'].extend(passed)
    results['manifests']['failed'].extend(failed)

    if check_network:
        for channel in manifest_channels(manifests):
            if channel in SKIPPED_CHANNELS:
                continue
            ok, message = validate_channel_reachable(channel, settings.channel_url)
            results['channels']['passed' if ok else 'failed'].append(message)

    success = all(not area['failed'] for area in results.values())
    return success, results


def format_preflight_results(manifest_dir: Path, results: dict) -> str:
    """Format preflight check results for display."""
    lines = [f"\nPreflight checks for '{manifest_dir}':\n"]

    area_names = {
        'manager': 'Package manager',
        'manifests': 'Manifests',
        'channels': 'Channels',
    }

    for key, name in area_names.items():
        area = results.get(key, {'passed': [], 'failed': []})
        if area['passed'] or area['failed']:
            lines.append(f"{name}:")
            for item in area['passed']:
                lines.append(f"✓ {item}")
            for item in area['failed']:
                first_line, *rest = item.split('\n')
                lines.append(f"✗ {first_line}")
                lines.extend(f"  {line}" for line in rest)
            lines.append("")

    if all(not area['failed'] for area in results.values()):
        lines.append("All checks passed. Ready to import.")
    else:
        lines.append("Some checks failed. Fix issues before importing.")

    return '\n'.join(lines)
