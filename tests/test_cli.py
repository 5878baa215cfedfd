"""Tests for CLI module."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

import cli
from deadline import OperationCancelled
from environment import VPC_ID, Environment, EnvironmentSpec, load_environment, save_environment
from provisioner import ProvisioningError
from stack import StackError
from status import mark_available

ENV_FILE = """\
name: ci-test
spec:
  provider: aws
  auth:
    key_name: ci-key
  instance:
    region: us-west-2
    image:
      image_id: ami-1
    ingress_ip_ranges:
      - 203.0.113.0/24
"""


@pytest.fixture(autouse=True)
def no_signal_handlers():
    with patch('cli.install_interrupt_handler'):
        yield


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / 'env.yaml'
    path.write_text(ENV_FILE)
    return path


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / 'state'


def _saved_env(state_dir, name='ci-test', provider='aws'):
    env = Environment(name=name, spec=EnvironmentSpec.from_dict({'provider': provider}))
    env.status.set_property(VPC_ID, 'vpc-1')
    mark_available(env)
    save_environment(env, state_dir / f'{name}.yaml')
    return env


class TestDispatch:

    def test_no_args_prints_usage(self, capsys):
        assert cli.main([]) == 0
        assert 'Commands:' in capsys.readouterr().out

    def test_unknown_noun(self, capsys):
        assert cli.main(['launch']) == 1
        assert "Unknown command 'launch'" in capsys.readouterr().out

    def test_every_noun_dispatches(self):
        assert set(cli.DISPATCH) == set(cli.NOUN_COMMANDS)


class TestCreate:

    def test_cancellation_exits_130(self, env_file, state_dir):
        with patch('cli.ResourceStack') as mock_stack:
            mock_stack.return_value.create.side_effect = OperationCancelled('interrupted', reason='interrupt')
            rc = cli.main(['create', '-f', str(env_file), '--state-dir', str(state_dir), '--no-provision'])
        assert rc == 130

    def test_stack_failure_exits_1(self, env_file, state_dir):
        with patch('cli.ResourceStack') as mock_stack:
            mock_stack.return_value.create.side_effect = StackError('create_vpc failed: boom')
            rc = cli.main(['create', '-f', str(env_file), '--state-dir', str(state_dir), '--no-provision'])
        assert rc == 1

    def test_state_file_written_with_instance_label(self, env_file, state_dir):
        with patch('cli.ResourceStack'):
            rc = cli.main(['create', '-f', str(env_file), '--state-dir', str(state_dir), '--no-provision'])
        assert rc == 0
        env = load_environment(state_dir / 'ci-test.yaml')
        assert env.instance_id

    def test_refuses_existing_environment(self, env_file, state_dir):
        _saved_env(state_dir)
        with patch('cli.ResourceStack') as mock_stack:
            rc = cli.main(['create', '-f', str(env_file), '--state-dir', str(state_dir)])
        assert rc == 1
        mock_stack.return_value.create.assert_not_called()

    def test_provisioning_failure_exits_1(self, env_file, state_dir):
        with patch('cli.ResourceStack'), patch('cli.Provisioner') as mock_prov:
            mock_prov.return_value.run.side_effect = ProvisioningError('boom', node='host-1')
            rc = cli.main(['create', '-f', str(env_file), '--state-dir', str(state_dir)])
        assert rc == 1


class TestDelete:

    def test_missing_state_exits_1(self, state_dir):
        assert cli.main(['delete', 'nope', '--state-dir', str(state_dir)]) == 1

    def test_ssh_environment_marked_terminated(self, state_dir):
        _saved_env(state_dir, provider='ssh')
        assert cli.main(['delete', 'ci-test', '--state-dir', str(state_dir)]) == 0
        env = load_environment(state_dir / 'ci-test.yaml')
        assert any(c.type == 'Terminated' and c.status == 'True' for c in env.status.conditions)


class TestCleanup:

    def test_reports_failures(self, capsys):
        results = {'vpc-1': None, 'vpc-2': StackError('failed to delete VPC vpc-2 after 3 attempts')}
        with patch('cli.make_client', return_value=MagicMock()), \
                patch('cli.make_elb_client', return_value=MagicMock()), \
                patch('cli.cleanup_vpcs', return_value=results) as mock_cleanup:
            rc = cli.main(['cleanup', 'vpc-1', 'vpc-2', '--region', 'us-west-2', '--force', '--json-output'])
        assert rc == 1
        assert mock_cleanup.call_args[1]['force'] is True
        output = json.loads(capsys.readouterr().out)
        assert output['deleted'] == ['vpc-1']
        assert 'vpc-2' in output['failed']

    def test_all_deleted(self):
        with patch('cli.make_client', return_value=MagicMock()), \
                patch('cli.make_elb_client', return_value=MagicMock()), \
                patch('cli.cleanup_vpcs', return_value={'vpc-1': None}):
            assert cli.main(['cleanup', 'vpc-1', '--region', 'us-west-2']) == 0

    def test_deleter_includes_load_balancers(self):
        elb = MagicMock()
        with patch('cli.make_client', return_value=MagicMock()), \
                patch('cli.make_elb_client', return_value=elb), \
                patch('cli.cleanup_vpcs', return_value={'vpc-1': None}) as mock_cleanup:
            cli.main(['cleanup', 'vpc-1', '--region', 'us-west-2'])
        deleter = mock_cleanup.call_args[1]['make_deleter'](MagicMock())
        assert deleter.elb_client is elb

    def test_missing_region(self, monkeypatch):
        monkeypatch.delenv('AWS_REGION', raising=False)
        monkeypatch.delenv('AWS_DEFAULT_REGION', raising=False)
        assert cli.main(['cleanup', 'vpc-1']) == 1


class TestStatus:

    def test_json_status(self, state_dir, capsys):
        _saved_env(state_dir)
        assert cli.main(['status', 'ci-test', '--state-dir', str(state_dir), '--json-output']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['state'] == 'running'
        assert data['status']['properties'][0] == {'name': 'vpc-id', 'value': 'vpc-1'}

    def test_list(self, state_dir, capsys):
        _saved_env(state_dir, name='a')
        _saved_env(state_dir, name='b')
        assert cli.main(['list', '--state-dir', str(state_dir), '--json-output']) == 0
        data = json.loads(capsys.readouterr().out)
        assert [e['name'] for e in data['environments']] == ['a', 'b']


class TestHealth:

    def test_unhealthy_exits_1(self, state_dir):
        _saved_env(state_dir)
        health = MagicMock(healthy=False, nodes=[], message='API server is not running')
        with patch('cli.get_cluster_health', return_value=health):
            assert cli.main(['health', 'ci-test', '--state-dir', str(state_dir)]) == 1
