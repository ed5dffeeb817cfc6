"""Shared pytest fixtures for envkeeper tests."""

import shutil
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


def _has_conda():
    """Check if a real conda installation is available."""
    try:
        from manager import find_conda
        find_conda()
        return True
    except Exception:
        return shutil.which('conda') is not None


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_conda when conda is not installed."""
    if _has_conda():
        return
    skip_marker = pytest.mark.skip(reason="requires a conda installation")
    for item in items:
        if "requires_conda" in item.keywords:
            item.add_marker(skip_marker)


TOOLS_MANIFEST = """name: tools
channels:
  - conda-forge
dependencies:
  - python=3.11
  - ripgrep
  - jq
  - git
"""

PIP_MANIFEST = """name: webapp
channels:
  - conda-forge
dependencies:
  - python=3.10
  - pip
  - pip:
      - flask==2.3.2
      - requests>=2.28
"""


@pytest.fixture
def write_manifest(tmp_path):
    """Factory writing a manifest file and returning the loaded Manifest."""
    from manifest import Manifest

    def _write(name, content, directory=None, suffix='.yml'):
        directory = Path(directory or tmp_path / 'manifests')
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f'{name}{suffix}'
        path.write_text(content, encoding='utf-8')
        return Manifest.from_file(path)

    return _write


@pytest.fixture
def tools_manifest(write_manifest):
    return write_manifest('tools', TOOLS_MANIFEST)


@pytest.fixture
def pip_manifest(write_manifest):
    return write_manifest('webapp', PIP_MANIFEST)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at temporary manifest and report directories."""
    from config import Settings
    return Settings(
        manifest_dir=tmp_path / 'manifests',
        report_dir=tmp_path / 'reports',
        timeout=30,
        kill_grace=0.5,
    )


def dependency_manifest(name, count, extra=''):
    """Manifest text with `count` plain dependency entries."""
    deps = ''.join(f'  - pkg{i}\n' for i in range(count))
    return f"name: {name}\nchannels:\n  - conda-forge\ndependencies:\n{extra}{deps}"
