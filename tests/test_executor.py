"""Tests for env_opr.executor module.

Real child processes (sh/sleep) stand in for conda so that deadline,
termination and reaping behave as they would in production.
"""

import os
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from env_opr.executor import SupervisedExecutor, classify_failure
from env_opr.state import Complexity, ErrorKind, ExecutionRequest, Operation, Status
from manager import CondaManager

_real_popen = subprocess.Popen


def _executor_running(cmd, kill_grace=0.5):
    """Executor whose manager returns `cmd` for every operation."""
    manager = MagicMock(spec=CondaManager)
    manager.create_command.return_value = cmd
    manager.update_command.return_value = cmd
    manager.upgrade_command.return_value = cmd
    return SupervisedExecutor(manager, kill_grace=kill_grace)


def _request(manifest, operation=Operation.CREATE, complexity=Complexity.COMPLEX):
    return ExecutionRequest(env_name=manifest.name, operation=operation, manifest=manifest,
                            timeout=30, complexity=complexity)


def _process_gone(pid, wait=5.0):
    """True once pid has exited. A zombie awaiting its new parent counts as exited."""
    deadline = time.monotonic() + wait
    while True:
        try:
            os.kill(pid, 0)
            with open(f'/proc/{pid}/stat') as f:
                if f.read().rsplit(')', 1)[1].split()[0] == 'Z':
                    return True
        except (ProcessLookupError, FileNotFoundError):
            return True
        if time.monotonic() > deadline:
            return False
        time.sleep(0.1)


class _PopenSpy:
    """Records every process the executor spawns."""

    def __init__(self):
        self.procs = []

    def __call__(self, *args, **kwargs):
        proc = _real_popen(*args, **kwargs)
        self.procs.append(proc)
        return proc


class TestClassifyFailure:
    """Test failure classification from captured output."""

    def test_pip_resolution_impossible(self):
        output = ("Collecting flask\n"
                  "ERROR: ResolutionImpossible: for help visit https://pip.pypa.io\n"
                  "CondaEnvException: Pip failed\n")
        kind, diagnostic = classify_failure(output, 1)
        assert kind is ErrorKind.PIP
        assert diagnostic == 'ERROR: ResolutionImpossible: for help visit https://pip.pypa.io'

    def test_pip_subprocess_error_keeps_matching_lines(self):
        output = ("Solving environment: done\n"
                  "Pip subprocess error:\n"
                  "ERROR: Cannot install foo==1.0 and bar==2.0\n"
                  "ERROR: Cannot install foo==1.0 and bar==2.0\n")
        kind, diagnostic = classify_failure(output, 1)
        assert kind is ErrorKind.PIP
        assert diagnostic.splitlines() == [
            'Pip subprocess error:',
            'ERROR: Cannot install foo==1.0 and bar==2.0',
        ]

    def test_manager_error_keeps_tail(self):
        output = '\n'.join(f'line {i}' for i in range(40)) + '\nUnsatisfiableError: conflicts\n'
        kind, diagnostic = classify_failure(output, 1)
        assert kind is ErrorKind.MANAGER
        assert diagnostic.endswith('UnsatisfiableError: conflicts')
        assert 'line 0' not in diagnostic

    def test_empty_output(self):
        kind, diagnostic = classify_failure('', 3)
        assert kind is ErrorKind.MANAGER
        assert 'code 3' in diagnostic


class TestBuildCommand:
    """Test command selection per operation."""

    def test_create_and_update(self, tools_manifest):
        executor = SupervisedExecutor(CondaManager('conda', solver='libmamba'))
        create = executor.build_command(_request(tools_manifest), use_solver=True)
        update = executor.build_command(_request(tools_manifest, Operation.UPDATE), use_solver=False)
        assert create[:3] == ['conda', 'env', 'create']
        assert create[-1] == '--solver=libmamba'
        assert update[:3] == ['conda', 'env', 'update']
        assert not any(a.startswith('--solver') for a in update)

    def test_upgrade_needs_no_manifest(self):
        executor = SupervisedExecutor(CondaManager('conda'))
        cmd = executor.build_command(ExecutionRequest('data', Operation.UPGRADE), use_solver=True)
        assert cmd[:2] == ['conda', 'update']

    def test_create_without_manifest_rejected(self):
        executor = SupervisedExecutor(CondaManager('conda'))
        with pytest.raises(ValueError):
            executor.build_command(ExecutionRequest('x', Operation.CREATE), use_solver=True)


class TestSupervisedRun:
    """Test run() with real child processes."""

    def test_success(self, tools_manifest):
        executor = _executor_running(['true'])
        outcome = executor.run(_request(tools_manifest), timeout=10)
        assert outcome.status is Status.SUCCESS
        assert outcome.operation is Operation.CREATE
        assert outcome.complexity is Complexity.COMPLEX
        assert outcome.diagnostic is None

    def test_supervised_path_requests_solver(self, tools_manifest):
        executor = _executor_running(['true'])
        executor.run(_request(tools_manifest), timeout=10)
        assert executor.manager.create_command.call_args.kwargs['use_solver'] is True

    def test_pip_failure(self, tools_manifest):
        script = 'echo "Pip subprocess error:"; echo "ERROR: ResolutionImpossible" >&2; exit 1'
        executor = _executor_running(['sh', '-c', script])
        outcome = executor.run(_request(tools_manifest), timeout=10)
        assert outcome.status is Status.FAILED
        assert outcome.error_kind is ErrorKind.PIP
        assert 'ResolutionImpossible' in outcome.diagnostic

    def test_manager_failure(self, tools_manifest):
        script = 'echo "PackagesNotFoundError: nosuchpkg" >&2; exit 1'
        executor = _executor_running(['sh', '-c', script])
        outcome = executor.run(_request(tools_manifest), timeout=10)
        assert outcome.status is Status.FAILED
        assert outcome.error_kind is ErrorKind.MANAGER
        assert 'PackagesNotFoundError' in outcome.diagnostic

    def test_launch_failure_is_outcome(self, tools_manifest):
        executor = _executor_running(['/nonexistent/conda', 'env', 'create'])
        outcome = executor.run(_request(tools_manifest), timeout=10)
        assert outcome.status is Status.FAILED
        assert outcome.error_kind is ErrorKind.LAUNCH

    def test_command_build_failure_is_outcome(self, tools_manifest):
        executor = _executor_running(['true'])
        executor.manager.create_command.side_effect = RuntimeError('bad path')
        outcome = executor.run(_request(tools_manifest), timeout=10)
        assert outcome.status is Status.FAILED
        assert outcome.error_kind is ErrorKind.LAUNCH
        assert 'bad path' in outcome.diagnostic

    def test_deadline_terminates_process(self, tools_manifest):
        spy = _PopenSpy()
        executor = _executor_running(['sleep', '30'])
        start = time.monotonic()
        with patch('env_opr.executor.subprocess.Popen', side_effect=spy):
            outcome = executor.run(_request(tools_manifest), timeout=2)
        elapsed = time.monotonic() - start

        assert outcome.status is Status.TIMED_OUT
        assert outcome.error_kind is ErrorKind.DEADLINE
        assert 'deadline exceeded' in outcome.diagnostic
        assert elapsed < 2 + 5
        assert len(spy.procs) == 1
        assert spy.procs[0].poll() is not None

    def test_deadline_kills_process_ignoring_sigterm(self, tools_manifest):
        spy = _PopenSpy()
        executor = _executor_running(['sh', '-c', 'trap "" TERM; sleep 30'], kill_grace=0.5)
        start = time.monotonic()
        with patch('env_opr.executor.subprocess.Popen', side_effect=spy):
            outcome = executor.run(_request(tools_manifest), timeout=1)
        elapsed = time.monotonic() - start

        assert outcome.status is Status.TIMED_OUT
        assert elapsed < 1 + 0.5 + 5
        assert spy.procs[0].poll() is not None

    @pytest.mark.skipif(not Path('/proc').is_dir(), reason='needs /proc')
    def test_deadline_terminates_grandchildren(self, tools_manifest, tmp_path):
        pidfile = tmp_path / 'grandchild.pid'
        executor = _executor_running(['sh', '-c', f'sleep 60 & echo $! > {pidfile}; wait'])
        outcome = executor.run(_request(tools_manifest), timeout=1)

        assert outcome.status is Status.TIMED_OUT
        grandchild = int(pidfile.read_text().strip())
        assert _process_gone(grandchild)

    def test_request_timeout_used_when_none_given(self, tools_manifest):
        executor = _executor_running(['sleep', '30'])
        request = ExecutionRequest('tools', Operation.CREATE, manifest=tools_manifest, timeout=1)
        outcome = executor.run(request)
        assert outcome.status is Status.TIMED_OUT


class TestDirectRun:
    """Test run_direct()."""

    def test_no_solver_and_no_deadline(self, tools_manifest):
        executor = _executor_running(['sh', '-c', 'sleep 0.2'])
        with patch('env_opr.executor.subprocess.Popen', side_effect=_real_popen) as mock_popen:
            outcome = executor.run_direct(_request(tools_manifest, complexity=Complexity.STANDARD))
        assert outcome.status is Status.SUCCESS
        assert outcome.complexity is Complexity.STANDARD
        assert executor.manager.create_command.call_args.kwargs['use_solver'] is False
        mock_popen.assert_called_once()

    def test_direct_failure_classified(self, tools_manifest):
        executor = _executor_running(['sh', '-c', 'echo "Permission denied: /opt/conda" >&2; exit 1'])
        outcome = executor.run_direct(_request(tools_manifest, Operation.UPDATE))
        assert outcome.status is Status.FAILED
        assert outcome.operation is Operation.UPDATE
        assert outcome.error_kind is ErrorKind.MANAGER
        assert 'Permission denied' in outcome.diagnostic
