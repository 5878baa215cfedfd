#!/usr/bin/env python3
"""CLI entry point for testbed-driver.

Nouns:
- create: Create an environment's AWS stack and provision it
- delete: Tear down a recorded environment
- cleanup: Gated teardown of VPCs by ID
- provision: (Re)install the software stack on an environment's nodes
- status: Show an environment's status and recorded resources
- health: Live Kubernetes health of an environment
- list: List recorded environments
"""

import argparse
import json
import logging
import sys
import time
import uuid
from pathlib import Path
from typing import Optional

from config import ConfigError, DriverConfig, load_environment_file, resolve_config
from deadline import CancelToken, Deadline, OperationCancelled, install_interrupt_handler
from environment import (
    INSTANCE_LABEL_KEY,
    PROVIDER_AWS,
    ROLE_CONTROL_PLANE,
    Environment,
    StateError,
    StateStore,
    load_environment,
)
from provisioner import ClusterProvisioner, Provisioner, ProvisioningError, get_cluster_health
from stack import (
    ResourceStack,
    StackDeleter,
    StackError,
    TeardownGate,
    cleanup_vpcs,
    make_client,
    make_elb_client,
)
from status import mark_terminated, resolve_status

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130

NOUN_COMMANDS = {
    'create': 'Create an environment and provision it',
    'delete': 'Tear down a recorded environment',
    'cleanup': 'Gated teardown of VPCs by ID',
    'provision': 'Install the software stack on an environment',
    'status': 'Show environment status',
    'health': 'Show live cluster health',
    'list': 'List recorded environments',
}


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _common_parser(noun: str, description: str) -> argparse.ArgumentParser:
    """Parser with the options every noun shares."""
    parser = argparse.ArgumentParser(prog=f'testbed {noun}', description=description)
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--json-output', action='store_true',
                        help='Emit structured JSON to stdout (logs go to stderr)')
    parser.add_argument('--state-dir', help='Directory holding environment state files')
    parser.add_argument('--region', help='AWS region (default: AWS_REGION / AWS_DEFAULT_REGION)')
    parser.add_argument('--timeout', type=float, dest='target_timeout',
                        help='Per-target deadline in seconds (default: 900)')
    parser.add_argument('--ssh-key', help='Private key for SSH (default: ~/.ssh/id_rsa)')
    parser.add_argument('--ssh-user', help='Default SSH user (default: ubuntu)')
    parser.add_argument('--host-key-policy', choices=['accept-any', 'known-hosts'],
                        help='SSH host key trust mode (default: accept-any)')
    parser.add_argument('--known-hosts', dest='known_hosts_file',
                        help='known_hosts file for --host-key-policy known-hosts')
    return parser


def _config_from_args(args) -> DriverConfig:
    flags = {
        'region': args.region,
        'state_dir': args.state_dir,
        'target_timeout': args.target_timeout,
        'ssh_key': args.ssh_key,
        'ssh_user': args.ssh_user,
        'host_key_policy': args.host_key_policy,
        'known_hosts_file': args.known_hosts_file,
    }
    if getattr(args, 'no_caller_ip', False):
        flags['discover_caller_ip'] = False
    return resolve_config(flags)


def _emit_json(data: dict) -> None:
    print(json.dumps(data, indent=2))


def _load_state(config: DriverConfig, name: str) -> tuple[Environment, StateStore]:
    path = config.state_file(name)
    env = load_environment(path)
    return env, StateStore(path)


def _provision(env: Environment, config: DriverConfig, store: StateStore, deadline: Deadline,
               node_names: Optional[list[str]] = None):
    """Provision a single host or every node of a cluster."""
    if env.is_multinode:
        nodes = env.status.cluster.nodes if env.status.cluster else []
        if node_names:
            unknown = set(node_names) - {n.name for n in nodes}
            if unknown:
                raise ProvisioningError(f"unknown node(s): {', '.join(sorted(unknown))}")
            # The first control plane always runs: it issues the join token
            first_cp = next((n for n in nodes if n.role == ROLE_CONTROL_PLANE), None)
            nodes = [n for n in nodes if n is first_cp or n.name in node_names]
        return ClusterProvisioner(config, save=store.save).provision_cluster(env, deadline, nodes=nodes)
    return Provisioner(config, save=store.save).run(env, deadline)


def _run_guarded(fn) -> int:
    """Run fn, mapping domain errors to exit codes."""
    try:
        return fn()
    except OperationCancelled as e:
        logger.error(f"Cancelled ({e.reason}): {e}")
        return EXIT_CANCELLED
    except ProvisioningError as e:
        where = f" on node {e.node}" if e.node else ''
        logger.error(f"Provisioning failed{where}: {e}")
        return EXIT_FAILURE
    except (ConfigError, StateError, StackError) as e:
        logger.error(str(e))
        return EXIT_FAILURE


def create_main(argv: list) -> int:
    """Handle 'create' noun."""
    parser = _common_parser('create', NOUN_COMMANDS['create'])
    parser.add_argument('--file', '-f', type=Path, required=True, help='Environment definition YAML')
    parser.add_argument('--name', '-n', help='Environment name (overrides the file)')
    parser.add_argument('--no-provision', action='store_true', help='Create resources only')
    parser.add_argument('--no-caller-ip', action='store_true',
                        help="Do not add this machine's public IP to the security group")
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    token = CancelToken()
    install_interrupt_handler(token)

    def _create() -> int:
        config = _config_from_args(args)
        data = load_environment_file(args.file)
        if args.name:
            data['name'] = args.name
        env = Environment.from_dict(data)
        env.labels.setdefault(INSTANCE_LABEL_KEY, uuid.uuid4().hex[:12])
        path = config.state_file(env.name)
        if path.exists():
            existing = load_environment(path)
            if resolve_status(existing.status.conditions) != 'terminated':
                logger.error(f"Environment '{env.name}' already exists ({path}); delete it first")
                return EXIT_FAILURE
        store = StateStore(path)
        store.save(env)

        start = time.time()
        if env.spec.provider == PROVIDER_AWS:
            ResourceStack(config, save=store.save).create(env, Deadline(config.target_timeout, token))
        if not args.no_provision:
            _provision(env, config, store, Deadline(config.target_timeout, token))

        if args.json_output:
            _emit_json({
                'name': env.name,
                'status': resolve_status(env.status.conditions),
                'duration_seconds': round(time.time() - start, 2),
                'properties': env.status.properties,
            })
        else:
            logger.info(f"Environment '{env.name}' ready in {time.time() - start:.1f}s (state: {path})")
        return EXIT_OK

    return _run_guarded(_create)


def delete_main(argv: list) -> int:
    """Handle 'delete' noun."""
    parser = _common_parser('delete', NOUN_COMMANDS['delete'])
    parser.add_argument('name', help='Environment name')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    token = CancelToken()
    install_interrupt_handler(token)

    def _delete() -> int:
        config = _config_from_args(args)
        env, store = _load_state(config, args.name)
        if env.spec.provider == PROVIDER_AWS:
            ResourceStack(config, save=store.save).delete(env, Deadline(config.target_timeout, token))
        else:
            # Nothing was created for an SSH host
            mark_terminated(env, message='Host released')
            store.save(env)
        if args.json_output:
            _emit_json({'name': env.name, 'status': resolve_status(env.status.conditions)})
        return EXIT_OK

    return _run_guarded(_delete)


def cleanup_main(argv: list) -> int:
    """Handle 'cleanup' noun: gated teardown of VPCs by ID."""
    parser = _common_parser('cleanup', NOUN_COMMANDS['cleanup'])
    parser.add_argument('vpc_ids', nargs='+', metavar='VPC_ID', help='VPC IDs to delete')
    parser.add_argument('--force', action='store_true',
                        help='Skip the GitHub job status check')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    token = CancelToken()
    install_interrupt_handler(token)

    def _cleanup() -> int:
        config = _config_from_args(args)
        client = make_client(config.region, config.call_timeout)
        elb_client = make_elb_client(config.region, config.call_timeout)
        gate = TeardownGate(client, token=config.github_token)
        results = cleanup_vpcs(
            args.vpc_ids,
            gate,
            make_deleter=lambda deadline: StackDeleter.from_config(
                client, config, deadline, elb_client=elb_client),
            make_deadline=lambda: Deadline(config.target_timeout, token),
            force=args.force,
        )
        failed = {vpc: str(err) for vpc, err in results.items() if err is not None}
        if args.json_output:
            _emit_json({
                'success': not failed,
                'deleted': [vpc for vpc, err in results.items() if err is None],
                'failed': failed,
            })
        else:
            for vpc, err in results.items():
                print(f"  {vpc}: {'deleted' if err is None else f'FAILED ({err})'}")
        return EXIT_FAILURE if failed else EXIT_OK

    return _run_guarded(_cleanup)


def provision_main(argv: list) -> int:
    """Handle 'provision' noun."""
    parser = _common_parser('provision', NOUN_COMMANDS['provision'])
    parser.add_argument('name', help='Environment name')
    parser.add_argument('--node', action='append', dest='nodes', metavar='NAME',
                        help='Only provision this cluster node (repeatable)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    token = CancelToken()
    install_interrupt_handler(token)

    def _provision_env() -> int:
        config = _config_from_args(args)
        env, store = _load_state(config, args.name)
        result = _provision(env, config, store, Deadline(config.target_timeout, token), args.nodes)
        if args.json_output:
            _emit_json({
                'name': env.name,
                'success': result.success,
                'message': result.message,
                'duration_seconds': round(result.duration, 2),
                'components': env.status.components,
            })
        else:
            logger.info(result.message)
        return EXIT_OK if result.success else EXIT_FAILURE

    return _run_guarded(_provision_env)


def status_main(argv: list) -> int:
    """Handle 'status' noun."""
    parser = _common_parser('status', NOUN_COMMANDS['status'])
    parser.add_argument('name', help='Environment name')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    def _status() -> int:
        config = _config_from_args(args)
        env, _store = _load_state(config, args.name)
        label = resolve_status(env.status.conditions)
        if args.json_output:
            data = env.to_dict()
            data['state'] = label
            _emit_json(data)
            return EXIT_OK

        print(f"Environment: {env.name}")
        print(f"Status:      {label}")
        for cond in env.status.conditions:
            if cond.status == 'True':
                print(f"Reason:      {cond.reason} - {cond.message}")
        if env.status.properties:
            print("\nResources:")
            for prop in env.status.properties:
                print(f"  {prop['name']:38} {prop['value']}")
        if env.status.cluster:
            print("\nNodes:")
            for node in env.status.cluster.nodes:
                print(f"  {node.name:30} {node.role:14} {node.public_ip or node.private_ip:16} {node.phase}")
        if env.status.components:
            print("\nComponents:")
            for node, states in env.status.components.items():
                for component, state in states.items():
                    print(f"  {node:30} {component:28} {state}")
        return EXIT_OK

    return _run_guarded(_status)


def health_main(argv: list) -> int:
    """Handle 'health' noun."""
    parser = _common_parser('health', NOUN_COMMANDS['health'])
    parser.add_argument('name', help='Environment name')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    def _health() -> int:
        config = _config_from_args(args)
        env, _store = _load_state(config, args.name)
        health = get_cluster_health(env, config)
        if args.json_output:
            _emit_json(health.to_dict())
        else:
            print(f"Healthy:     {health.healthy}")
            print(f"API server:  {health.api_server_status}")
            print(f"Nodes:       {health.ready_nodes}/{health.total_nodes} ready "
                  f"({health.control_planes} control-plane, {health.workers} worker)")
            for node in health.nodes:
                print(f"  {node.name:30} {node.role:14} {node.status:12} {node.version}")
            if health.message:
                print(f"Message:     {health.message}")
        return EXIT_OK if health.healthy else EXIT_FAILURE

    return _run_guarded(_health)


def list_main(argv: list) -> int:
    """Handle 'list' noun."""
    parser = _common_parser('list', NOUN_COMMANDS['list'])
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    def _list() -> int:
        config = _config_from_args(args)
        rows = []
        for path in sorted(config.state_dir.glob('*.yaml')):
            try:
                env = load_environment(path)
            except StateError as e:
                logger.warning(f"Skipping {path}: {e}")
                continue
            rows.append({
                'name': env.name,
                'provider': env.spec.provider,
                'status': resolve_status(env.status.conditions),
            })
        if args.json_output:
            _emit_json({'environments': rows})
        elif not rows:
            print(f"No environments in {config.state_dir}")
        else:
            for row in rows:
                print(f"  {row['name']:30} {row['provider']:6} {row['status']}")
        return EXIT_OK

    return _run_guarded(_list)


DISPATCH = {
    'create': create_main,
    'delete': delete_main,
    'cleanup': cleanup_main,
    'provision': provision_main,
    'status': status_main,
    'health': health_main,
    'list': list_main,
}


def print_usage() -> None:
    print("Usage: testbed <command> [options]")
    print()
    print("Commands:")
    for noun, description in NOUN_COMMANDS.items():
        print(f"  {noun:12} {description}")
    print()
    print("Run 'testbed <command> --help' for command-specific options.")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to noun handlers."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return EXIT_OK
    noun = argv[0]
    if noun not in DISPATCH:
        print(f"Error: Unknown command '{noun}'")
        print_usage()
        return EXIT_FAILURE
    return DISPATCH[noun](argv[1:])


if __name__ == '__main__':
    sys.exit(main())
