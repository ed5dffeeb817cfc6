"""Thin wrapper around the conda command line.

Only locates the executable and builds/runs conda subcommands. Install
and update commands are built here but executed by env_opr.executor,
which owns deadlines and failure classification.
"""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from common import ManagerError, ManagerNotFoundError, run_command, tail_lines

logger = logging.getLogger(__name__)

# Searched in order after explicit settings and PATH
CONVENTIONAL_LOCATIONS = [
    Path.home() / 'miniforge3' / 'bin' / 'conda',
    Path.home() / 'mambaforge' / 'bin' / 'conda',
    Path.home() / 'miniconda3' / 'bin' / 'conda',
    Path.home() / 'anaconda3' / 'bin' / 'conda',
    Path('/opt/conda/bin/conda'),
    Path('/opt/miniconda3/bin/conda'),
]

QUERY_TIMEOUT = 120
POST_STEP_TIMEOUT = 300


def find_conda(explicit: Optional[str] = None) -> str:
    """Locate the conda executable.

    Order: explicit path, ENVKEEPER_CONDA, CONDA_EXE, `conda` then `mamba`
    on PATH, conventional install locations.

    Raises:
        ManagerNotFoundError: If nothing usable is found
    """
    candidates = [explicit, os.environ.get('ENVKEEPER_CONDA'), os.environ.get('CONDA_EXE')]
    for candidate in candidates:
        if candidate and Path(candidate).is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        if candidate:
            logger.debug(f"Ignoring unusable conda candidate: {candidate}")

    for name in ('conda', 'mamba'):
        found = shutil.which(name)
        if found:
            return found

    for path in CONVENTIONAL_LOCATIONS:
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)

    raise ManagerNotFoundError(
        "conda executable not found. Set --conda, ENVKEEPER_CONDA or CONDA_EXE, "
        "or put conda on PATH")


class CondaManager:
    """Builds and runs conda subcommands.

    Attributes:
        executable: Path to the conda (or mamba) binary
        solver: Solver name passed as --solver on supervised operations
    """

    def __init__(self, executable: str, solver: str = 'libmamba'):
        self.executable = executable
        self.solver = solver

    def _solver_args(self, use_solver: bool) -> list[str]:
        if use_solver and self.solver:
            return [f'--solver={self.solver}']
        return []

    def list_environments(self) -> dict[str, str]:
        """Return {env name: prefix} for all environments conda knows.

        The root prefix is reported as 'base'.

        Raises:
            ManagerError: If conda fails or returns unparseable output
        """
        rc, out, err = run_command([self.executable, 'env', 'list', '--json'], timeout=QUERY_TIMEOUT)
        if rc != 0:
            raise ManagerError(f"conda env list failed: {tail_lines(err or out, 5)}")
        try:
            data = json.loads(out)
            prefixes = data['envs']
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ManagerError(f"Unexpected conda env list output: {e}") from e

        root_prefix = data.get('root_prefix')
        envs: dict[str, str] = {}
        for prefix in prefixes:
            if root_prefix and Path(prefix) == Path(root_prefix):
                envs['base'] = prefix
            else:
                envs[Path(prefix).name] = prefix
        if 'base' not in envs and prefixes:
            # Older conda omits root_prefix; the first entry is the root
            envs.setdefault('base', prefixes[0])
        return envs

    def environment_exists(self, name: str, install_root: Optional[Path] = None) -> bool:
        """Check whether an environment exists by name, or only under install_root when given.

        A same-named environment elsewhere does not count when install_root
        is set, since the install targets `<install_root>/<name>`.
        """
        if install_root is not None:
            return (Path(install_root) / name / 'conda-meta').is_dir()
        return name in self.list_environments()

    def create_command(self, manifest_path: Path, name: str,
                       prefix: Optional[Path] = None, use_solver: bool = False) -> list[str]:
        target = ['-p', str(prefix)] if prefix is not None else ['-n', name]
        return ([self.executable, 'env', 'create', '-f', str(manifest_path)]
                + target + self._solver_args(use_solver))

    def update_command(self, manifest_path: Path, name: str,
                       prefix: Optional[Path] = None, use_solver: bool = False) -> list[str]:
        target = ['-p', str(prefix)] if prefix is not None else ['-n', name]
        return ([self.executable, 'env', 'update'] + target
                + ['-f', str(manifest_path)] + self._solver_args(use_solver))

    def upgrade_command(self, name: str, use_solver: bool = True) -> list[str]:
        return ([self.executable, 'update', '-n', name, '--all', '-y']
                + self._solver_args(use_solver))

    def export(self, name: str, no_builds: bool = True) -> str:
        """Export an environment's manifest text.

        Raises:
            ManagerError: If conda env export fails
        """
        cmd = [self.executable, 'env', 'export', '-n', name]
        if no_builds:
            cmd.append('--no-builds')
        rc, out, err = run_command(cmd, timeout=QUERY_TIMEOUT)
        if rc != 0:
            raise ManagerError(f"conda env export failed for '{name}': {tail_lines(err or out, 5)}")
        return out

    def upgrade_pip(self, name: str, prefix: Optional[Path] = None) -> tuple[bool, str]:
        """Upgrade pip inside an environment. Returns (success, message)."""
        target = ['-p', str(prefix)] if prefix is not None else ['-n', name]
        cmd = ([self.executable, 'run'] + target
               + ['python', '-m', 'pip', 'install', '--upgrade', 'pip'])
        rc, out, err = run_command(cmd, timeout=POST_STEP_TIMEOUT)
        if rc != 0:
            return False, tail_lines(err or out, 5)
        return True, 'pip upgraded'
