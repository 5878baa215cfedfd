"""Tests for environment.py - data model and YAML state store."""

import stat
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import yaml

from environment import (
    PUBLIC_DNS_NAME,
    VPC_ID,
    ClusterStatus,
    Environment,
    EnvironmentSpec,
    Node,
    StateError,
    StateStore,
    load_environment,
    save_environment,
)
from status import mark_available, resolve_status


CLUSTER_SPEC = {
    'provider': 'aws',
    'instance': {'type': 'g4dn.xlarge', 'image': {'architecture': 'arm64'}},
    'kubernetes': {'install': True, 'installer': 'kubeadm', 'version': 'v1.31.1'},
    'cluster': {
        'region': 'eu-north-1',
        'control_plane': {'count': 3, 'dedicated': True, 'labels': {'tier': 'cp'}},
        'workers': {'count': 2, 'instance_type': 'g5.xlarge'},
        'high_availability': True,
    },
}


class TestEnvironmentSpec:

    def test_defaults(self):
        spec = EnvironmentSpec.from_dict({})
        assert spec.provider == 'aws'
        assert spec.auth.username == 'ubuntu'
        assert spec.kubernetes.installer == 'kubeadm'
        assert spec.cluster is None

    def test_unknown_provider_rejected(self):
        with pytest.raises(StateError, match='Unknown provider'):
            EnvironmentSpec.from_dict({'provider': 'gcp'})

    def test_cluster_parsed(self):
        spec = EnvironmentSpec.from_dict(CLUSTER_SPEC)
        assert spec.cluster.control_plane.count == 3
        assert spec.cluster.control_plane.dedicated is True
        assert spec.cluster.workers.instance_type == 'g5.xlarge'
        assert spec.cluster.high_availability is True
        assert spec.instance.image.architecture == 'arm64'

    def test_unknown_keys_ignored(self):
        spec = EnvironmentSpec.from_dict({'kernel': {'version': '6.8.0-1015-aws', 'extra': 1}})
        assert spec.kernel.version == '6.8.0-1015-aws'


class TestEnvironmentStatus:

    def test_set_property_keeps_order_and_updates_in_place(self):
        env = Environment(name='e')
        env.status.set_property(VPC_ID, 'vpc-1')
        env.status.set_property(PUBLIC_DNS_NAME, 'ec2-1.compute.amazonaws.com')
        env.status.set_property(VPC_ID, 'vpc-2')
        assert [p['name'] for p in env.status.properties] == [VPC_ID, PUBLIC_DNS_NAME]
        assert env.status.get_property(VPC_ID) == 'vpc-2'
        assert env.status.get_property('missing') == ''


class TestStateStore:

    def test_save_and_load_round_trip_cluster(self, tmp_path):
        env = Environment(name='ci', spec=EnvironmentSpec.from_dict(CLUSTER_SPEC),
                          labels={'testbed-instance-id': 'abc'})
        env.status.set_property(VPC_ID, 'vpc-1')
        env.status.cluster = ClusterStatus(
            nodes=[Node(name='ci-control-plane-0', role='control-plane', private_ip='10.0.0.5')],
            control_plane_endpoint='10.0.0.5',
        )
        env.status.components = {'ci-control-plane-0': {'kernel': 'installed'}}
        mark_available(env)

        path = tmp_path / 'nested' / 'ci.yaml'
        save_environment(env, path)
        loaded = load_environment(path)

        assert loaded.name == 'ci'
        assert loaded.instance_id == 'abc'
        assert loaded.status.get_property(VPC_ID) == 'vpc-1'
        assert loaded.status.cluster.nodes[0].private_ip == '10.0.0.5'
        assert loaded.status.components['ci-control-plane-0']['kernel'] == 'installed'
        assert resolve_status(loaded.status.conditions) == 'running'
        assert loaded.spec.cluster.workers.count == 2

    def test_file_is_owner_only(self, tmp_path):
        path = save_environment(Environment(name='e'), tmp_path / 'e.yaml')
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_single_node_omits_cluster_sections(self, tmp_path):
        path = save_environment(Environment(name='e'), tmp_path / 'e.yaml')
        data = yaml.safe_load(path.read_text())
        assert 'cluster' not in data['spec']
        assert 'cluster' not in data['status']

    def test_missing_file(self, tmp_path):
        with pytest.raises(StateError, match='not found'):
            load_environment(tmp_path / 'nope.yaml')

    def test_record_requires_name(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('spec: {}\n')
        with pytest.raises(StateError, match='name'):
            load_environment(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('name: [unclosed\n')
        with pytest.raises(StateError, match='Invalid YAML'):
            load_environment(path)

    def test_store_without_path_is_noop(self):
        StateStore(None).save(Environment(name='e'))

    def test_store_writes_each_save(self, tmp_path):
        store = StateStore(tmp_path / 'e.yaml')
        env = Environment(name='e')
        env.status.set_property(VPC_ID, 'vpc-1')
        store.save(env)
        assert load_environment(tmp_path / 'e.yaml').status.get_property(VPC_ID) == 'vpc-1'
