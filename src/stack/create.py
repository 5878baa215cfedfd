"""Create the VPC stack for one environment.

Steps run in strict dependency order. Every created ID is written to
Status.Properties and saved before the next step starts, so a failure at
any point leaves a record that teardown can find. Nothing is rolled back.
"""

import logging
import time
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from common import get_caller_ip
from config import DriverConfig, correlation_tags
from deadline import Deadline, OperationCancelled
from environment import (
    INSTANCE_ID,
    INTERNET_GATEWAY_ATTACHMENT,
    INTERNET_GATEWAY_ID,
    LISTENER_ARN,
    LOAD_BALANCER_ARN,
    PUBLIC_DNS_NAME,
    ROLE_CONTROL_PLANE,
    ROLE_WORKER,
    ROUTE_TABLE_ID,
    SECURITY_GROUP_ID,
    SUBNET_ID,
    TARGET_GROUP_ARN,
    VPC_ID,
    ClusterStatus,
    Environment,
    Node,
)
from stack.ec2 import StackError, make_client, make_elb_client, tag_specifications
from stack.image import resolve_image
from status import mark_available, mark_degraded, mark_progressing

logger = logging.getLogger(__name__)

VPC_CIDR = '10.0.0.0/16'
SUBNET_CIDR = '10.0.0.0/24'
INGRESS_PORTS = (22, 443, 6443)

# Node-to-node ports opened inside the VPC for clusters
CLUSTER_INTERNAL_PORTS = (
    ('tcp', 6443),   # API server
    ('tcp', 10250),  # kubelet
    ('tcp', 10257),  # controller-manager
    ('tcp', 10259),  # scheduler
    ('tcp', 2379),   # etcd client
    ('tcp', 2380),   # etcd peer
    ('tcp', 179),    # Calico BGP
    ('tcp', 5473),   # Calico Typha
    ('udp', 4789),   # Calico VXLAN
)

WAITER_DELAY = 15

API_SERVER_PORT = 6443
ELB_NAME_LIMIT = 32


def needs_load_balancer(env: Environment) -> bool:
    """HA clusters with more than one control plane get an API server load balancer."""
    cluster = env.spec.cluster
    return bool(cluster and cluster.high_availability and cluster.control_plane.count > 1)


def elb_name(env_name: str, suffix: str) -> str:
    """Load balancer resource name within the 32 character limit."""
    prefix = env_name[:ELB_NAME_LIMIT - len(suffix) - 1].strip('-')
    return f'{prefix}-{suffix}'


def stack_region(env: Environment, config: DriverConfig) -> str:
    """Region for env: cluster region, then instance region, then config."""
    if env.spec.cluster and env.spec.cluster.region:
        return env.spec.cluster.region
    return env.spec.instance.region or config.region


class ResourceStack:
    """Creates and deletes the network-and-compute stack of one environment.

    Args:
        config: Resolved driver configuration
        client: EC2 client (created from the environment's region when omitted)
        elb_client: ELBv2 client for HA clusters (created on first use when omitted)
        save: Called with the environment after every recorded change
        caller_ip_lookup: Returns this machine's public IP for SG ingress
    """

    def __init__(
        self,
        config: DriverConfig,
        client=None,
        elb_client=None,
        save: Optional[Callable[[Environment], None]] = None,
        caller_ip_lookup: Callable[[], str] = get_caller_ip,
        waiter_delay: int = WAITER_DELAY,
    ):
        self.config = config
        self.client = client
        self.elb_client = elb_client
        self.save = save or (lambda _env: None)
        self.caller_ip_lookup = caller_ip_lookup
        self.waiter_delay = waiter_delay
        self._tags: list[dict] = []
        self._image_id = ''
        self._deadline: Optional[Deadline] = None

    def _ec2(self, env: Environment):
        if self.client is None:
            self.client = make_client(stack_region(env, self.config), self.config.call_timeout)
        return self.client

    def _elb(self, env: Environment):
        if self.elb_client is None:
            self.elb_client = make_elb_client(stack_region(env, self.config), self.config.call_timeout)
        return self.elb_client

    def _record(self, env: Environment, name: str, value: str) -> None:
        env.status.set_property(name, value)
        self.save(env)
        logger.debug(f"Recorded {name}={value}")

    def get_phases(self, env: Environment) -> list[tuple[str, Callable, str]]:
        """Return list of (step_name, callable, description) tuples."""
        phases = [
            ('resolve_image', self._resolve_image, 'Resolve instance image'),
            ('create_vpc', self._create_vpc, 'Create VPC'),
            ('create_subnet', self._create_subnet, 'Create subnet'),
            ('create_internet_gateway', self._create_internet_gateway, 'Create internet gateway'),
            ('create_route_table', self._create_route_table, 'Create route table'),
            ('create_security_group', self._create_security_group, 'Create security group'),
        ]
        if env.is_multinode:
            phases.append(('create_cluster_instances', self._create_cluster_instances,
                           'Launch control-plane and worker instances'))
            if needs_load_balancer(env):
                phases.append(('create_load_balancer', self._create_load_balancer,
                               'Create API server load balancer'))
        else:
            phases.append(('create_instance', self._create_instance, 'Launch instance'))
        return phases

    def create(self, env: Environment, deadline: Optional[Deadline] = None) -> Environment:
        """Create every stack resource for env.

        Raises:
            StackError: A step failed (Degraded is recorded first)
            OperationCancelled: Deadline expired or interrupted
        """
        self._deadline = deadline or Deadline(self.config.target_timeout)
        self._tags = correlation_tags(self.config, env.name, env.instance_id)
        self._ec2(env)

        start_time = time.time()
        logger.info(f"Creating stack for environment '{env.name}'")

        for step_name, step, description in self.get_phases(env):
            try:
                self._deadline.check(step_name)
                if mark_progressing(env, 'Creating', description):
                    self.save(env)
                logger.info(f"Running step: {step_name} - {description}")
                step(env)
            except OperationCancelled as e:
                mark_degraded(env, 'Cancelled', f"{step_name}: {e}")
                self.save(env)
                raise
            except StackError as e:
                mark_degraded(env, 'CreateFailed', f"{step_name}: {e}")
                self.save(env)
                raise
            except (ClientError, BotoCoreError) as e:
                mark_degraded(env, 'CreateFailed', f"{step_name}: {e}")
                self.save(env)
                raise StackError(f"{step_name} failed: {e}", operation=step_name) from e

        mark_available(env)
        self.save(env)
        logger.info(f"Stack for '{env.name}' created in {time.time() - start_time:.1f}s")
        return env

    def delete(self, env: Environment, deadline: Optional[Deadline] = None) -> Environment:
        """Delete the stack recorded in env's properties and mark it Terminated."""
        from stack.delete import delete_environment
        return delete_environment(
            env,
            self._ec2(env),
            self.config,
            deadline or Deadline(self.config.target_timeout),
            save=self.save,
            elb_client=self._elb(env) if env.is_multinode else None,
        )

    # Steps

    def _resolve_image(self, env: Environment) -> None:
        self._image_id = resolve_image(self.client, env.spec.instance.image, stack_region(env, self.config))

    def _create_vpc(self, env: Environment) -> None:
        resp = self.client.create_vpc(
            CidrBlock=VPC_CIDR,
            TagSpecifications=tag_specifications('vpc', self._tags),
        )
        vpc_id = resp['Vpc']['VpcId']
        self._record(env, VPC_ID, vpc_id)
        self.client.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={'Value': True})
        self.client.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={'Value': True})
        logger.info(f"Created VPC {vpc_id}")

    def _create_subnet(self, env: Environment) -> None:
        resp = self.client.create_subnet(
            VpcId=env.status.get_property(VPC_ID),
            CidrBlock=SUBNET_CIDR,
            TagSpecifications=tag_specifications('subnet', self._tags),
        )
        subnet_id = resp['Subnet']['SubnetId']
        self._record(env, SUBNET_ID, subnet_id)
        logger.info(f"Created subnet {subnet_id}")

    def _create_internet_gateway(self, env: Environment) -> None:
        vpc_id = env.status.get_property(VPC_ID)
        resp = self.client.create_internet_gateway(
            TagSpecifications=tag_specifications('internet-gateway', self._tags),
        )
        igw_id = resp['InternetGateway']['InternetGatewayId']
        self._record(env, INTERNET_GATEWAY_ID, igw_id)
        self.client.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        self._record(env, INTERNET_GATEWAY_ATTACHMENT, vpc_id)
        logger.info(f"Created internet gateway {igw_id} attached to {vpc_id}")

    def _create_route_table(self, env: Environment) -> None:
        resp = self.client.create_route_table(
            VpcId=env.status.get_property(VPC_ID),
            TagSpecifications=tag_specifications('route-table', self._tags),
        )
        rt_id = resp['RouteTable']['RouteTableId']
        self._record(env, ROUTE_TABLE_ID, rt_id)
        self.client.create_route(
            RouteTableId=rt_id,
            DestinationCidrBlock='0.0.0.0/0',
            GatewayId=env.status.get_property(INTERNET_GATEWAY_ID),
        )
        self.client.associate_route_table(
            RouteTableId=rt_id,
            SubnetId=env.status.get_property(SUBNET_ID),
        )
        logger.info(f"Created route table {rt_id}")

    def _ingress_ranges(self, env: Environment) -> list[str]:
        ranges = []
        if self.config.discover_caller_ip:
            try:
                ip = self.caller_ip_lookup()
            except Exception as e:
                raise StackError(f"failed to look up caller IP: {e}", operation='create_security_group') from e
            ranges.append(ip if '/' in ip else f'{ip}/32')
        for cidr in env.spec.instance.ingress_ip_ranges:
            if cidr not in ranges:
                ranges.append(cidr)
        if not ranges:
            raise StackError("no ingress IP ranges configured", operation='create_security_group')
        return ranges

    def _create_security_group(self, env: Environment) -> None:
        ranges = self._ingress_ranges(env)
        resp = self.client.create_security_group(
            GroupName=env.name,
            Description=f'{env.name} testbed security group',
            VpcId=env.status.get_property(VPC_ID),
            TagSpecifications=tag_specifications('security-group', self._tags),
        )
        sg_id = resp['GroupId']
        self._record(env, SECURITY_GROUP_ID, sg_id)

        ip_ranges = [{'CidrIp': cidr} for cidr in ranges]
        permissions = [
            {'IpProtocol': 'tcp', 'FromPort': port, 'ToPort': port, 'IpRanges': ip_ranges}
            for port in INGRESS_PORTS
        ]
        if env.is_multinode:
            permissions += [
                {'IpProtocol': proto, 'FromPort': port, 'ToPort': port,
                 'IpRanges': [{'CidrIp': VPC_CIDR}]}
                for proto, port in CLUSTER_INTERNAL_PORTS
            ]
        self.client.authorize_security_group_ingress(GroupId=sg_id, IpPermissions=permissions)
        logger.info(f"Created security group {sg_id} (ingress from {', '.join(ranges)})")

    def _run_instance(self, env: Environment, name: str, instance_type: str,
                      extra_tags: Optional[list[dict]] = None) -> str:
        tags = [t for t in self._tags if t['Key'] != 'Name']
        tags += (extra_tags or []) + [{'Key': 'Name', 'Value': name}]
        params = {
            'ImageId': self._image_id,
            'InstanceType': instance_type,
            'MinCount': 1,
            'MaxCount': 1,
            'InstanceInitiatedShutdownBehavior': 'terminate',
            'BlockDeviceMappings': [{
                'DeviceName': '/dev/sda1',
                'Ebs': {'VolumeSize': env.spec.instance.root_volume_size_gb, 'VolumeType': 'gp2'},
            }],
            'NetworkInterfaces': [{
                'AssociatePublicIpAddress': True,
                'DeleteOnTermination': True,
                'DeviceIndex': 0,
                'Groups': [env.status.get_property(SECURITY_GROUP_ID)],
                'SubnetId': env.status.get_property(SUBNET_ID),
            }],
            'TagSpecifications': tag_specifications('instance', tags),
        }
        if env.spec.auth.key_name:
            params['KeyName'] = env.spec.auth.key_name
        resp = self.client.run_instances(**params)
        instance_id = resp['Instances'][0]['InstanceId']
        logger.info(f"Launched instance {instance_id} ({name}, {instance_type})")
        return instance_id

    def _wait_running(self, instance_ids: list[str]) -> list[dict]:
        """Wait for instances to run; returns their descriptions in the given order."""
        self._deadline.check('wait for instances')
        max_attempts = max(1, int(self._deadline.remaining() // self.waiter_delay))
        logger.info(f"Waiting for {len(instance_ids)} instance(s) to be running...")
        self.client.get_waiter('instance_running').wait(
            InstanceIds=instance_ids,
            WaiterConfig={'Delay': self.waiter_delay, 'MaxAttempts': max_attempts},
        )
        resp = self.client.describe_instances(InstanceIds=instance_ids)
        by_id = {}
        for reservation in resp.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                by_id[instance['InstanceId']] = instance
        return [by_id.get(i, {'InstanceId': i}) for i in instance_ids]

    def _finish_instance(self, instance: dict) -> None:
        """Tag the primary network interface and disable source/dest check."""
        interfaces = instance.get('NetworkInterfaces', [])
        if interfaces:
            self.client.create_tags(
                Resources=[interfaces[0]['NetworkInterfaceId']],
                Tags=self._tags,
            )
        self.client.modify_instance_attribute(
            InstanceId=instance['InstanceId'],
            SourceDestCheck={'Value': False},
        )

    def _create_instance(self, env: Environment) -> None:
        instance_id = self._run_instance(env, env.name, env.spec.instance.type)
        self._record(env, INSTANCE_ID, instance_id)

        instance = self._wait_running([instance_id])[0]
        self._finish_instance(instance)
        public_dns = instance.get('PublicDnsName', '')
        self._record(env, PUBLIC_DNS_NAME, public_dns)
        logger.info(f"Instance {instance_id} running at {public_dns}")

    def _create_cluster_instances(self, env: Environment) -> None:
        cluster = env.spec.cluster
        pools = [(ROLE_CONTROL_PLANE, cluster.control_plane)]
        if cluster.workers and cluster.workers.count > 0:
            pools.append((ROLE_WORKER, cluster.workers))

        launched: list[tuple[str, str, str]] = []
        for role, pool in pools:
            for index in range(pool.count):
                self._deadline.check('launch instances')
                name = f'{env.name}-{role}-{index}'
                instance_id = self._run_instance(
                    env, name, pool.instance_type or env.spec.instance.type,
                    extra_tags=[{'Key': 'Role', 'Value': role}, {'Key': 'NodeIndex', 'Value': str(index)}],
                )
                launched.append((instance_id, name, role))
                self._record(env, INSTANCE_ID, ','.join(i for i, _n, _r in launched))

        instances = self._wait_running([i for i, _n, _r in launched])
        nodes = []
        for (instance_id, name, role), instance in zip(launched, instances):
            self._finish_instance(instance)
            nodes.append(Node(
                name=name,
                role=role,
                public_ip=instance.get('PublicIpAddress', ''),
                private_ip=instance.get('PrivateIpAddress', ''),
                phase=instance.get('State', {}).get('Name', 'running'),
                ssh_username=env.spec.auth.username,
                instance_id=instance_id,
            ))

        control_planes = [n for n in nodes if n.role == ROLE_CONTROL_PLANE]
        env.status.cluster = ClusterStatus(
            nodes=nodes,
            control_plane_endpoint=control_planes[0].private_ip if control_planes else '',
        )
        primary = instances[0]
        self._record(env, PUBLIC_DNS_NAME, primary.get('PublicDnsName', ''))
        logger.info(f"Cluster instances running: {len(control_planes)} control-plane, "
                    f"{len(nodes) - len(control_planes)} worker")

    def _create_load_balancer(self, env: Environment) -> None:
        """Network load balancer on :6443 in front of every control-plane instance."""
        elb = self._elb(env)
        vpc_id = env.status.get_property(VPC_ID)

        resp = elb.create_load_balancer(
            Name=elb_name(env.name, 'nlb'),
            Type='network',
            Scheme='internet-facing',
            IpAddressType='ipv4',
            Subnets=[env.status.get_property(SUBNET_ID)],
            Tags=self._tags,
        )
        balancer = resp['LoadBalancers'][0]
        lb_arn = balancer['LoadBalancerArn']
        self._record(env, LOAD_BALANCER_ARN, lb_arn)

        resp = elb.create_target_group(
            Name=elb_name(env.name, 'k8s-api-tg'),
            Protocol='TCP',
            Port=API_SERVER_PORT,
            VpcId=vpc_id,
            TargetType='instance',
            HealthCheckProtocol='TCP',
            HealthCheckPort=str(API_SERVER_PORT),
            HealthCheckIntervalSeconds=10,
            HealthCheckTimeoutSeconds=5,
            HealthyThresholdCount=2,
            UnhealthyThresholdCount=2,
            Tags=self._tags,
        )
        tg_arn = resp['TargetGroups'][0]['TargetGroupArn']
        self._record(env, TARGET_GROUP_ARN, tg_arn)
        # Control planes reach the API through the balancer, including their own instance
        elb.modify_target_group_attributes(
            TargetGroupArn=tg_arn,
            Attributes=[{'Key': 'preserve_client_ip.enabled', 'Value': 'false'}],
        )

        resp = elb.create_listener(
            LoadBalancerArn=lb_arn,
            Protocol='TCP',
            Port=API_SERVER_PORT,
            DefaultActions=[{'Type': 'forward', 'TargetGroupArn': tg_arn}],
            Tags=self._tags,
        )
        self._record(env, LISTENER_ARN, resp['Listeners'][0]['ListenerArn'])

        targets = [
            {'Id': n.instance_id, 'Port': API_SERVER_PORT}
            for n in env.status.cluster.nodes
            if n.role == ROLE_CONTROL_PLANE and n.instance_id
        ]
        if not targets:
            raise StackError("no control-plane instances to register with the load balancer",
                             operation='RegisterTargets')
        elb.register_targets(TargetGroupArn=tg_arn, Targets=targets)

        self._deadline.check('wait for load balancer')
        max_attempts = max(1, int(self._deadline.remaining() // self.waiter_delay))
        logger.info(f"Waiting for load balancer {lb_arn} to be active...")
        elb.get_waiter('load_balancer_available').wait(
            LoadBalancerArns=[lb_arn],
            WaiterConfig={'Delay': self.waiter_delay, 'MaxAttempts': max_attempts},
        )

        dns_name = balancer.get('DNSName', '')
        env.status.cluster.load_balancer_dns = dns_name
        env.status.cluster.control_plane_endpoint = dns_name
        self.save(env)
        logger.info(f"Load balancer {dns_name} forwarding :{API_SERVER_PORT} to {len(targets)} control plane(s)")
