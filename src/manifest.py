"""Environment manifest loading and discovery.

A manifest is a conda environment file (`conda env export` format):

    name: tools
    channels:
      - conda-forge
    dependencies:
      - python=3.11
      - ripgrep
      - pip:
          - httpie==3.2.2

The environment name is always taken from the file name, not from the
`name:` key, so a renamed backup restores under its new name.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import ManifestDirectoryMissingError

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = ('.yml', '.yaml')


@dataclass(frozen=True)
class Manifest:
    """An environment manifest read from disk.

    Attributes:
        name: Environment name (file stem)
        content: Raw manifest text
        size: Size in bytes of the file as read
        path: Location of the file
        read_error: Why the file could not be read; None when it was
    """
    name: str
    content: str
    size: int
    path: Path
    read_error: Optional[str] = None

    @classmethod
    def from_file(cls, path: Path) -> 'Manifest':
        """Read a manifest file."""
        path = Path(path)
        raw = path.read_bytes()
        return cls(
            name=path.stem,
            content=raw.decode('utf-8', errors='replace'),
            size=len(raw),
            path=path,
        )

    @classmethod
    def unreadable(cls, path: Path, error: Exception) -> 'Manifest':
        """Placeholder for a file that exists but could not be read."""
        path = Path(path)
        return cls(name=path.stem, content='', size=0, path=path, read_error=str(error))

    @classmethod
    def from_text(cls, name: str, content: str, path: Path) -> 'Manifest':
        """Build a manifest from text that has already been written to path."""
        return cls(name=name, content=content, size=len(content.encode('utf-8')), path=Path(path))


def discover_manifests(manifest_dir: Path) -> list[Manifest]:
    """Read every manifest in a directory, sorted by environment name.

    When both `<name>.yml` and `<name>.yaml` exist, the first in sorted
    order wins and the other is skipped with a warning. Unreadable files
    are kept with `read_error` set so the run records them as failed.

    Raises:
        ManifestDirectoryMissingError: If the directory does not exist
    """
    manifest_dir = Path(manifest_dir)
    if not manifest_dir.is_dir():
        raise ManifestDirectoryMissingError(f"Manifest directory not found: {manifest_dir}")

    manifests: dict[str, Manifest] = {}
    for path in sorted(manifest_dir.iterdir()):
        if not path.is_file() or path.suffix.lower() not in MANIFEST_SUFFIXES:
            continue
        if path.stem in manifests:
            logger.warning(f"Skipping {path.name}: environment '{path.stem}' already "
                           f"defined by {manifests[path.stem].path.name}")
            continue
        try:
            manifests[path.stem] = Manifest.from_file(path)
        except OSError as e:
            logger.error(f"Could not read {path}: {e}")
            manifests[path.stem] = Manifest.unreadable(path, e)

    logger.debug(f"Discovered {len(manifests)} manifest(s) in {manifest_dir}")
    return list(manifests.values())
