"""Supervised execution of conda install/update operations.

Each request runs as one child process in its own session (process
group) with stdout and stderr merged and captured. Supervised runs race
the child against a deadline; on expiry the whole process group is
terminated and reaped before an outcome is returned. Direct runs use the
same machinery with no deadline and no solver override.
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Optional

from common import tail_lines
from env_opr.state import ErrorKind, ExecutionRequest, Operation, Outcome, Status
from manager import CondaManager

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600

# Lines that identify a failure inside pip's sub-resolver rather than conda's solver
PIP_SIGNATURES = (
    'ResolutionImpossible',
    'Pip subprocess error',
    "pip's dependency resolver",
    'ERROR: Cannot install',
    'ERROR: Could not find a version',
    'ERROR: No matching distribution',
)

MAX_DIAGNOSTIC_LINES = 20


def classify_failure(output: str, returncode: int) -> tuple[ErrorKind, str]:
    """Classify a non-zero exit into (error kind, diagnostic text).

    pip failures keep only the matching lines; anything else keeps the
    tail of the raw output.
    """
    pip_lines: list[str] = []
    for line in output.splitlines():
        if any(sig.lower() in line.lower() for sig in PIP_SIGNATURES):
            stripped = line.strip()
            if stripped not in pip_lines:
                pip_lines.append(stripped)
    if pip_lines:
        return ErrorKind.PIP, '\n'.join(pip_lines[:MAX_DIAGNOSTIC_LINES])

    diagnostic = tail_lines(output, MAX_DIAGNOSTIC_LINES)
    if not diagnostic:
        diagnostic = f'conda exited with code {returncode} and no output'
    return ErrorKind.MANAGER, diagnostic


@dataclass
class SupervisedExecutor:
    """Runs conda operations as cancellable child processes.

    Attributes:
        manager: Builds the conda command lines
        kill_grace: Seconds between SIGTERM and SIGKILL on deadline expiry
    """
    manager: CondaManager
    kill_grace: float = 5.0

    def build_command(self, request: ExecutionRequest, use_solver: bool) -> list[str]:
        """Build the conda command line for a request."""
        if request.operation is Operation.UPGRADE:
            return self.manager.upgrade_command(request.env_name, use_solver=use_solver)
        if request.manifest is None:
            raise ValueError(f"{request.operation.value} requires a manifest")
        if request.operation is Operation.CREATE:
            return self.manager.create_command(
                request.manifest.path, request.env_name,
                prefix=request.prefix, use_solver=use_solver)
        return self.manager.update_command(
            request.manifest.path, request.env_name,
            prefix=request.prefix, use_solver=use_solver)

    def run(self, request: ExecutionRequest, timeout: Optional[int] = None) -> Outcome:
        """Run a request under a deadline with the alternate solver.

        Never raises; launch errors become FAILED outcomes.
        """
        deadline = timeout or request.timeout or DEFAULT_TIMEOUT
        logger.info(f"[{request.env_name}] Supervised {request.operation.value} "
                    f"(deadline {deadline}s)")
        return self._execute(request, use_solver=True, timeout=deadline)

    def run_direct(self, request: ExecutionRequest) -> Outcome:
        """Run a request synchronously with no deadline."""
        logger.info(f"[{request.env_name}] Direct {request.operation.value}")
        return self._execute(request, use_solver=False, timeout=None)

    def _outcome(self, request: ExecutionRequest, status: Status, start: float,
                 diagnostic: Optional[str] = None,
                 error_kind: Optional[ErrorKind] = None) -> Outcome:
        return Outcome(
            env_name=request.env_name,
            status=status,
            operation=request.operation,
            complexity=request.complexity,
            diagnostic=diagnostic,
            error_kind=error_kind,
            duration=time.time() - start,
        )

    def _execute(self, request: ExecutionRequest, use_solver: bool,
                 timeout: Optional[float]) -> Outcome:
        start = time.time()
        try:
            cmd = self.build_command(request, use_solver)
            logger.debug(f"[{request.env_name}] Running: {' '.join(cmd)}")
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors='replace',
                start_new_session=(os.name != 'nt'),
            )
        except Exception as e:
            logger.error(f"[{request.env_name}] Could not launch conda: {e}")
            return self._outcome(request, Status.FAILED, start, str(e), ErrorKind.LAUNCH)

        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._terminate(proc)
            logger.error(f"[{request.env_name}] Deadline of {timeout}s exceeded, process terminated")
            return self._outcome(request, Status.TIMED_OUT, start,
                                 f'deadline exceeded after {timeout}s', ErrorKind.DEADLINE)
        except BaseException:
            self._terminate(proc)
            raise

        if proc.returncode == 0:
            logger.info(f"[{request.env_name}] {request.operation.value} succeeded")
            return self._outcome(request, Status.SUCCESS, start)

        error_kind, diagnostic = classify_failure(output or '', proc.returncode)
        logger.error(f"[{request.env_name}] {request.operation.value} failed "
                     f"(exit {proc.returncode}, {error_kind.value} error)")
        return self._outcome(request, Status.FAILED, start, diagnostic, error_kind)

    def _terminate(self, proc: subprocess.Popen) -> None:
        """Terminate the child's process group and reap it.

        Returns only once the child has exited.
        """
        self._signal(proc, signal.SIGTERM)
        try:
            proc.communicate(timeout=self.kill_grace)
            return
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {proc.pid} ignored SIGTERM, sending SIGKILL")

        self._signal(proc, signal.SIGKILL)
        proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name != 'nt':
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
