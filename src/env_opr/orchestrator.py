"""Environment orchestration: import, bulk upgrade and export.

Environments are processed strictly one at a time; concurrent conda runs
share the package cache and its lock. Each environment ends with exactly
one recorded Outcome, and no per-environment error escapes the loop.
"""

import logging
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from common import ManagerError
from config import Settings
from env_opr.analyzer import classify, package_name
from env_opr.executor import SupervisedExecutor
from env_opr.pins import strip_pins
from env_opr.state import (
    Classification,
    Complexity,
    ErrorKind,
    ExecutionRequest,
    Operation,
    Outcome,
    RunReport,
    Status,
)
from manager import CondaManager
from manifest import Manifest

logger = logging.getLogger(__name__)


def _drop_duplicates(items: list, name_of) -> list:
    """Keep the first item per environment name; later ones are skipped with a warning."""
    seen: set[str] = set()
    unique = []
    for item in items:
        name = name_of(item)
        if name in seen:
            logger.warning(f"[{name}] Listed more than once, skipping duplicate")
            continue
        seen.add(name)
        unique.append(item)
    return unique


def declares_pip(manifest: Manifest) -> bool:
    """True if the manifest lists pip itself or a pip: section."""
    for line in manifest.content.splitlines():
        entry = line.strip()
        if not entry.startswith('-'):
            continue
        entry = entry[1:].strip().strip('\'"')
        if entry.rstrip(':') == 'pip' or package_name(entry) == 'pip':
            return True
    return False


@dataclass
class PlannedEnvironment:
    """Dry-run plan entry for one manifest."""
    name: str
    classification: Classification
    route: str
    source: Path


@dataclass
class EnvironmentOrchestrator:
    """Drives conda operations across many environments.

    Attributes:
        manager: conda command wrapper
        settings: Run settings (timeout, upgrade mode, thresholds)
        executor: Supervised executor; built from manager if not given
    """
    manager: CondaManager
    settings: Settings
    executor: Optional[SupervisedExecutor] = None
    _scratch_dir: Optional[Path] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.executor is None:
            self.executor = SupervisedExecutor(self.manager, kill_grace=self.settings.kill_grace)

    def _prefix_for(self, name: str) -> Optional[Path]:
        if self.settings.install_root is None:
            return None
        return Path(self.settings.install_root) / name

    def preview(self, manifests: list[Manifest]) -> list[PlannedEnvironment]:
        """Classify manifests and report the route each would take. Touches nothing."""
        plan = []
        for manifest in manifests:
            classification = classify(manifest, self.settings.analysis)
            route = 'supervised' if classification.is_complex else 'direct'
            plan.append(PlannedEnvironment(manifest.name, classification, route, manifest.path))
        return plan

    def run(self, manifests: list[Manifest]) -> RunReport:
        """Import manifests: create missing environments, update existing ones.

        The scratch directory for unpinned manifests lives only for this
        call and is removed on every exit path.
        """
        manifests = _drop_duplicates(manifests, lambda m: m.name)
        report = RunReport(
            command='import',
            source=self.settings.manifest_dir,
            upgrade_mode=self.settings.upgrade,
        )
        mode = ' (upgrade mode)' if self.settings.upgrade else ''
        logger.info(f"Importing {len(manifests)} environment(s){mode}")

        with tempfile.TemporaryDirectory(prefix='envkeeper-') as scratch:
            self._scratch_dir = Path(scratch)
            try:
                for index, manifest in enumerate(manifests, 1):
                    logger.info(f"[{manifest.name}] ({index}/{len(manifests)}) Processing {manifest.path.name}")
                    outcome = self._import_one(manifest)
                    report.record(outcome)
            finally:
                self._scratch_dir = None

        report.finish()
        logger.info(f"Import finished: {report.success_count}/{report.total} succeeded "
                    f"in {report.duration:.1f}s")
        return report

    def _import_one(self, manifest: Manifest) -> Outcome:
        start = time.time()
        if manifest.read_error is not None:
            logger.error(f"[{manifest.name}] Manifest unreadable, not installing: {manifest.read_error}")
            return Outcome(
                env_name=manifest.name,
                status=Status.FAILED,
                operation=Operation.CREATE,
                complexity=Complexity.COMPLEX,
                diagnostic=f'could not read {manifest.path.name}: {manifest.read_error}',
                error_kind=ErrorKind.MANIFEST,
            )

        source = manifest
        if self.settings.upgrade and self._scratch_dir is not None:
            source = strip_pins(manifest, self._scratch_dir)

        classification = classify(source, self.settings.analysis)
        logger.info(f"[{manifest.name}] Classified {classification.complexity.value}: "
                    f"{classification.reason}")

        operation = Operation.CREATE
        try:
            prefix = self._prefix_for(manifest.name)
            exists = self.manager.environment_exists(manifest.name, self.settings.install_root)
            operation = Operation.UPDATE if exists else Operation.CREATE
            request = ExecutionRequest(
                env_name=manifest.name,
                operation=operation,
                manifest=source,
                prefix=prefix,
                timeout=self.settings.timeout,
                complexity=classification.complexity,
            )

            assert self.executor is not None
            if classification.is_complex:
                outcome = self.executor.run(request, self.settings.timeout)
            else:
                outcome = self.executor.run_direct(request)

            if outcome.succeeded and declares_pip(source):
                self._post_step(manifest.name, prefix)
            return outcome
        except Exception as e:
            logger.exception(f"[{manifest.name}] Unexpected error")
            return Outcome(
                env_name=manifest.name,
                status=Status.FAILED,
                operation=operation,
                complexity=classification.complexity,
                diagnostic=f'{type(e).__name__}: {e}',
                error_kind=ErrorKind.INTERNAL,
                duration=time.time() - start,
            )

    def _post_step(self, name: str, prefix: Optional[Path]) -> None:
        """Best-effort pip upgrade inside the environment; failures are only logged."""
        try:
            ok, message = self.manager.upgrade_pip(name, prefix)
        except Exception as e:
            ok, message = False, str(e)
        if ok:
            logger.info(f"[{name}] {message}")
        else:
            logger.warning(f"[{name}] pip upgrade failed (environment kept): {message}")

    def upgrade_all(self, env_names: Optional[list[str]] = None) -> RunReport:
        """Upgrade every package in each environment in place.

        Args:
            env_names: Environments to upgrade; default all except base

        Raises:
            ManagerError: If the environment list cannot be read
        """
        if env_names is None:
            env_names = sorted(name for name in self.manager.list_environments() if name != 'base')
        env_names = _drop_duplicates(list(env_names), lambda name: name)

        report = RunReport(command='upgrade')
        logger.info(f"Upgrading {len(env_names)} environment(s)")
        for index, name in enumerate(env_names, 1):
            logger.info(f"[{name}] ({index}/{len(env_names)}) Upgrading all packages")
            request = ExecutionRequest(env_name=name, operation=Operation.UPGRADE,
                                       timeout=self.settings.timeout)
            assert self.executor is not None
            report.record(self.executor.run(request, self.settings.timeout))
        report.finish()
        return report

    def export_all(self, target_dir: Path, include_base: bool = False,
                   no_builds: bool = True) -> list[tuple[str, bool, str]]:
        """Export every environment to `<target_dir>/<env>.yml`.

        Returns:
            List of (env name, success, message) in name order

        Raises:
            ManagerError: If the environment list cannot be read
        """
        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        names = sorted(self.manager.list_environments())
        if not include_base:
            names = [name for name in names if name != 'base']

        results = []
        for name in names:
            path = target_dir / f'{name}.yml'
            try:
                content = self.manager.export(name, no_builds=no_builds)
                path.write_text(content, encoding='utf-8')
            except (ManagerError, OSError) as e:
                logger.error(f"[{name}] Export failed: {e}")
                results.append((name, False, str(e)))
                continue
            logger.info(f"[{name}] Exported to {path}")
            results.append((name, True, str(path)))
        return results
