"""Tests for manager.py - conda location and command building."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ManagerError, ManagerNotFoundError
from manager import CondaManager, find_conda


def _fake_conda(tmp_path, name='conda'):
    path = tmp_path / name
    path.write_text('#!/bin/sh\nexit 0\n')
    path.chmod(0o755)
    return path


class TestFindConda:
    """Test find_conda() precedence."""

    def test_explicit_path(self, tmp_path, monkeypatch):
        monkeypatch.delenv('ENVKEEPER_CONDA', raising=False)
        conda = _fake_conda(tmp_path)
        assert find_conda(str(conda)) == str(conda)

    def test_env_var_before_path(self, tmp_path, monkeypatch):
        conda = _fake_conda(tmp_path)
        monkeypatch.setenv('ENVKEEPER_CONDA', str(conda))
        with patch('manager.shutil.which', return_value='/usr/bin/conda'):
            assert find_conda() == str(conda)

    def test_conda_exe(self, tmp_path, monkeypatch):
        conda = _fake_conda(tmp_path)
        monkeypatch.delenv('ENVKEEPER_CONDA', raising=False)
        monkeypatch.setenv('CONDA_EXE', str(conda))
        assert find_conda() == str(conda)

    def test_unusable_explicit_falls_through_to_path(self, tmp_path, monkeypatch):
        monkeypatch.delenv('ENVKEEPER_CONDA', raising=False)
        monkeypatch.delenv('CONDA_EXE', raising=False)
        with patch('manager.shutil.which', return_value='/usr/bin/conda'):
            assert find_conda(str(tmp_path / 'missing')) == '/usr/bin/conda'

    def test_conventional_location(self, tmp_path, monkeypatch):
        conda = _fake_conda(tmp_path)
        monkeypatch.delenv('ENVKEEPER_CONDA', raising=False)
        monkeypatch.delenv('CONDA_EXE', raising=False)
        monkeypatch.setattr('manager.CONVENTIONAL_LOCATIONS', [tmp_path / 'nope', conda])
        with patch('manager.shutil.which', return_value=None):
            assert find_conda() == str(conda)

    def test_not_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv('ENVKEEPER_CONDA', raising=False)
        monkeypatch.delenv('CONDA_EXE', raising=False)
        monkeypatch.setattr('manager.CONVENTIONAL_LOCATIONS', [tmp_path / 'nope'])
        with patch('manager.shutil.which', return_value=None):
            with pytest.raises(ManagerNotFoundError):
                find_conda()


class TestListEnvironments:
    """Test conda env list parsing."""

    def test_parses_json(self):
        output = json.dumps({
            'envs': ['/opt/conda', '/opt/conda/envs/data', '/home/u/envs/tools'],
            'root_prefix': '/opt/conda',
        })
        with patch('manager.run_command', return_value=(0, output, '')):
            envs = CondaManager('conda').list_environments()
        assert envs == {
            'base': '/opt/conda',
            'data': '/opt/conda/envs/data',
            'tools': '/home/u/envs/tools',
        }

    def test_without_root_prefix(self):
        output = json.dumps({'envs': ['/opt/conda', '/opt/conda/envs/data']})
        with patch('manager.run_command', return_value=(0, output, '')):
            envs = CondaManager('conda').list_environments()
        assert envs['base'] == '/opt/conda'
        assert 'data' in envs

    def test_command_failure(self):
        with patch('manager.run_command', return_value=(1, '', 'boom')):
            with pytest.raises(ManagerError, match='boom'):
                CondaManager('conda').list_environments()

    def test_bad_json(self):
        with patch('manager.run_command', return_value=(0, 'not json', '')):
            with pytest.raises(ManagerError):
                CondaManager('conda').list_environments()

    def test_environment_exists(self):
        manager = CondaManager('conda')
        with patch.object(manager, 'list_environments', return_value={'base': '/c', 'data': '/c/envs/data'}):
            assert manager.environment_exists('data') is True
            assert manager.environment_exists('tools') is False

    def test_environment_exists_under_install_root(self, tmp_path):
        (tmp_path / 'tools' / 'conda-meta').mkdir(parents=True)
        manager = CondaManager('conda')
        with patch.object(manager, 'list_environments', return_value={}) as mock_list:
            assert manager.environment_exists('tools', tmp_path) is True
            mock_list.assert_not_called()

    def test_same_name_elsewhere_ignored_with_install_root(self, tmp_path):
        manager = CondaManager('conda')
        elsewhere = {'base': '/c', 'tools': '/c/envs/tools'}
        with patch.object(manager, 'list_environments', return_value=elsewhere):
            assert manager.environment_exists('tools', tmp_path / 'root') is False
            assert manager.environment_exists('tools') is True


class TestCommands:
    """Test command building."""

    def test_create_by_name(self):
        cmd = CondaManager('/c/bin/conda').create_command(Path('/m/tools.yml'), 'tools')
        assert cmd == ['/c/bin/conda', 'env', 'create', '-f', '/m/tools.yml', '-n', 'tools']

    def test_create_with_prefix_and_solver(self):
        cmd = CondaManager('conda', solver='libmamba').create_command(
            Path('/m/tools.yml'), 'tools', prefix=Path('/opt/envs/tools'), use_solver=True)
        assert ['-p', '/opt/envs/tools'] == cmd[cmd.index('-p'):cmd.index('-p') + 2]
        assert '-n' not in cmd
        assert cmd[-1] == '--solver=libmamba'

    def test_update(self):
        cmd = CondaManager('conda').update_command(Path('/m/tools.yml'), 'tools', use_solver=True)
        assert cmd == ['conda', 'env', 'update', '-n', 'tools', '-f', '/m/tools.yml',
                       '--solver=libmamba']

    def test_upgrade(self):
        cmd = CondaManager('conda').upgrade_command('data')
        assert cmd == ['conda', 'update', '-n', 'data', '--all', '-y', '--solver=libmamba']

    def test_empty_solver_omits_flag(self):
        cmd = CondaManager('conda', solver='').upgrade_command('data')
        assert not any(arg.startswith('--solver') for arg in cmd)


class TestExportAndPostStep:
    """Test export and pip upgrade."""

    def test_export(self):
        with patch('manager.run_command', return_value=(0, 'name: data\n', '')) as mock_run:
            content = CondaManager('conda').export('data')
        assert content == 'name: data\n'
        assert '--no-builds' in mock_run.call_args[0][0]

    def test_export_with_builds(self):
        with patch('manager.run_command', return_value=(0, 'x', '')) as mock_run:
            CondaManager('conda').export('data', no_builds=False)
        assert '--no-builds' not in mock_run.call_args[0][0]

    def test_export_failure(self):
        with patch('manager.run_command', return_value=(1, '', 'EnvironmentLocationNotFound')):
            with pytest.raises(ManagerError, match='EnvironmentLocationNotFound'):
                CondaManager('conda').export('data')

    def test_upgrade_pip(self):
        with patch('manager.run_command', return_value=(0, 'ok', '')) as mock_run:
            ok, _ = CondaManager('conda').upgrade_pip('web')
        assert ok is True
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ['conda', 'run', '-n', 'web']
        assert cmd[-3:] == ['install', '--upgrade', 'pip']

    def test_upgrade_pip_failure(self):
        with patch('manager.run_command', return_value=(1, '', 'no pip')):
            ok, message = CondaManager('conda').upgrade_pip('web')
        assert ok is False
        assert 'no pip' in message


@pytest.mark.requires_conda
class TestRealConda:
    """Integration checks against an installed conda."""

    def test_lists_base(self):
        manager = CondaManager(find_conda())
        assert 'base' in manager.list_environments()
