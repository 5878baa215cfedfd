"""Delete a VPC stack in reverse dependency order.

One resource class at a time: load balancers, instances, security groups,
subnets, route tables, internet gateways, then the VPC itself. Within a
class every item is attempted and failures are collected; the class then
raises one StackError summarizing them and later classes are not attempted.
"""

import logging
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from config import DriverConfig
from deadline import Deadline, OperationCancelled
from environment import VPC_ID, Environment
from retry import RetryError, RetryPolicy, constant_backoff
from stack.ec2 import StackError, is_retryable
from status import mark_degraded, mark_terminated

logger = logging.getLogger(__name__)

LIVE_INSTANCE_STATES = ['running', 'stopped', 'stopping', 'pending', 'shutting-down']
TRANSIENT_RETRY_ATTEMPTS = 3
TRANSIENT_RETRY_DELAY = 5.0
WAITER_DELAY = 15

AWSError = (ClientError, BotoCoreError)


def _vpc_filter(vpc_id: str, name: str = 'vpc-id') -> list[dict]:
    return [{'Name': name, 'Values': [vpc_id]}]


class StackDeleter:
    """Deletes everything inside one VPC, then the VPC.

    Args:
        client: EC2 client
        deadline: Per-target deadline; checked between steps and used for sleeps
        vpc_retry: Retry policy for the final VPC delete (3 attempts, 30s apart)
        call_retry: Retry policy for throttled or dependency-blocked calls
        elb_client: ELBv2 client; load balancers are skipped when omitted
    """

    def __init__(
        self,
        client,
        deadline: Deadline,
        vpc_retry: Optional[RetryPolicy] = None,
        call_retry: Optional[RetryPolicy] = None,
        waiter_delay: int = WAITER_DELAY,
        elb_client=None,
    ):
        self.client = client
        self.elb_client = elb_client
        self.deadline = deadline
        self.vpc_retry = vpc_retry or RetryPolicy(
            max_attempts=3,
            backoff=constant_backoff(30.0),
            sleep=deadline.sleep,
        )
        self.call_retry = call_retry or RetryPolicy(
            max_attempts=TRANSIENT_RETRY_ATTEMPTS,
            backoff=constant_backoff(TRANSIENT_RETRY_DELAY),
            sleep=deadline.sleep,
            retry_on=is_retryable,
        )
        self.waiter_delay = waiter_delay

    @classmethod
    def from_config(cls, client, config: DriverConfig, deadline: Deadline,
                    elb_client=None) -> 'StackDeleter':
        return cls(
            client,
            deadline,
            elb_client=elb_client,
            vpc_retry=RetryPolicy(
                max_attempts=config.vpc_delete_attempts,
                backoff=constant_backoff(config.vpc_delete_delay),
                sleep=deadline.sleep,
            ),
        )

    def _call(self, description: str, fn: Callable, **kwargs):
        """Run one API call, retrying transient errors.

        Raises:
            StackError: Call failed (after retries for transient errors)
        """
        try:
            return self.call_retry.call(lambda: fn(**kwargs), description=description)
        except RetryError as e:
            raise StackError(str(e), operation=description) from e.last_error
        except AWSError as e:
            raise StackError(f"{description} failed: {e}", operation=description) from e

    def delete_vpc_resources(self, vpc_id: str) -> None:
        """Delete every resource in vpc_id, then the VPC.

        Raises:
            StackError: A class had failures, or the VPC delete was exhausted
            OperationCancelled: Deadline expired or interrupted
        """
        logger.info(f"Starting cleanup of resources in VPC: {vpc_id}")
        steps = [
            ('load balancers', self.delete_load_balancers),
            ('instances', self.delete_instances),
            ('security groups', self.delete_security_groups),
            ('subnets', self.delete_subnets),
            ('route tables', self.delete_route_tables),
            ('internet gateways', self.delete_internet_gateways),
            ('vpc', self.delete_vpc),
        ]
        for name, step in steps:
            self.deadline.check(f"deletion of {name}")
            step(vpc_id)
        logger.info(f"Successfully deleted VPC {vpc_id} and all associated resources")

    @staticmethod
    def _raise_failures(vpc_id: str, what: str, failures: list[str]) -> None:
        if failures:
            raise StackError(
                f"failed to delete {len(failures)} {what} in {vpc_id}: " + '; '.join(failures),
                resource=vpc_id,
                operation=f'delete {what}',
            )

    def _describe_elb(self, description: str, fn: Callable, key: str, **kwargs) -> list[dict]:
        items = []
        while True:
            resp = self._call(description, fn, **kwargs)
            items.extend(resp.get(key, []))
            if not resp.get('NextMarker'):
                return items
            kwargs['Marker'] = resp['NextMarker']

    def delete_load_balancers(self, vpc_id: str) -> None:
        if self.elb_client is None:
            return
        elb = self.elb_client
        balancers = [
            lb for lb in self._describe_elb('DescribeLoadBalancers', elb.describe_load_balancers, 'LoadBalancers')
            if lb.get('VpcId') == vpc_id
        ]
        groups = [
            tg for tg in self._describe_elb('DescribeTargetGroups', elb.describe_target_groups, 'TargetGroups')
            if tg.get('VpcId') == vpc_id
        ]
        if not balancers and not groups:
            logger.info("No load balancers found to delete")
            return

        deleted, failures = [], []
        for lb in balancers:
            lb_arn = lb['LoadBalancerArn']
            self.deadline.check('load balancer deletion')
            try:
                listeners = self._describe_elb(f'DescribeListeners {lb_arn}', elb.describe_listeners,
                                               'Listeners', LoadBalancerArn=lb_arn)
                for listener in listeners:
                    self._call(f"DeleteListener {listener['ListenerArn']}", elb.delete_listener,
                               ListenerArn=listener['ListenerArn'])
            except StackError as e:
                logger.warning(f"Failed to delete listeners of {lb_arn}: {e}")
            try:
                self._call(f'DeleteLoadBalancer {lb_arn}', elb.delete_load_balancer, LoadBalancerArn=lb_arn)
                deleted.append(lb_arn)
            except StackError as e:
                logger.warning(f"Failed to delete load balancer {lb_arn}: {e}")
                failures.append(f"{lb_arn}: {e}")

        # Target groups stay in use until their load balancer is gone
        if deleted:
            self._wait_load_balancers_deleted(deleted)
        for tg in groups:
            tg_arn = tg['TargetGroupArn']
            try:
                self._call(f'DeleteTargetGroup {tg_arn}', elb.delete_target_group, TargetGroupArn=tg_arn)
            except StackError as e:
                logger.warning(f"Failed to delete target group {tg_arn}: {e}")
                failures.append(f"{tg_arn}: {e}")
        self._raise_failures(vpc_id, 'load balancer resource(s)', failures)
        logger.info(f"Deleted {len(deleted)} load balancers and {len(groups)} target groups")

    def _wait_load_balancers_deleted(self, arns: list[str]) -> None:
        self.deadline.check('load balancer deletion wait')
        max_attempts = max(1, int(self.deadline.remaining() // self.waiter_delay))
        try:
            self.elb_client.get_waiter('load_balancers_deleted').wait(
                LoadBalancerArns=arns,
                WaiterConfig={'Delay': self.waiter_delay, 'MaxAttempts': max_attempts},
            )
        except AWSError as e:
            raise StackError(
                f"failed waiting for load balancers to be deleted: {e}",
                resource=','.join(arns),
                operation='WaitLoadBalancersDeleted',
            ) from e

    def delete_instances(self, vpc_id: str) -> None:
        instance_ids = []
        kwargs = {'Filters': _vpc_filter(vpc_id) + [
            {'Name': 'instance-state-name', 'Values': LIVE_INSTANCE_STATES},
        ]}
        while True:
            resp = self._call('DescribeInstances', self.client.describe_instances, **kwargs)
            for reservation in resp.get('Reservations', []):
                for instance in reservation.get('Instances', []):
                    instance_ids.append(instance['InstanceId'])
            if not resp.get('NextToken'):
                break
            kwargs['NextToken'] = resp['NextToken']

        if not instance_ids:
            logger.info("No instances found to delete")
            return

        terminated, failures = [], []
        for instance_id in instance_ids:
            self.deadline.check('instance termination')
            try:
                self._call(f'TerminateInstances {instance_id}', self.client.terminate_instances,
                           InstanceIds=[instance_id])
                terminated.append(instance_id)
            except StackError as e:
                logger.warning(f"Failed to terminate instance {instance_id}: {e}")
                failures.append(f"{instance_id}: {e}")

        if terminated:
            logger.info(f"Terminated {len(terminated)} instance(s), waiting for termination")
            self._wait_terminated(terminated)

        if failures:
            raise StackError(
                f"failed to terminate {len(failures)} instance(s): " + '; '.join(failures),
                resource=vpc_id,
                operation='TerminateInstances',
            )

    def _wait_terminated(self, instance_ids: list[str]) -> None:
        self.deadline.check('instance termination wait')
        max_attempts = max(1, int(self.deadline.remaining() // self.waiter_delay))
        try:
            self.client.get_waiter('instance_terminated').wait(
                InstanceIds=instance_ids,
                WaiterConfig={'Delay': self.waiter_delay, 'MaxAttempts': max_attempts},
            )
        except AWSError as e:
            raise StackError(
                f"failed waiting for instances to terminate: {e}",
                resource=','.join(instance_ids),
                operation='WaitInstanceTerminated',
            ) from e

    def delete_security_groups(self, vpc_id: str) -> None:
        resp = self._call('DescribeSecurityGroups', self.client.describe_security_groups,
                          Filters=_vpc_filter(vpc_id))
        default_sg_id = ''
        groups = []
        for sg in resp.get('SecurityGroups', []):
            if sg.get('GroupName') == 'default':
                default_sg_id = sg.get('GroupId', '')
            else:
                groups.append(sg)

        # Move interfaces still holding a group onto the default group
        for sg in groups:
            self.deadline.check('security group cleanup')
            try:
                enis = self._call('DescribeNetworkInterfaces', self.client.describe_network_interfaces,
                                  Filters=[{'Name': 'group-id', 'Values': [sg['GroupId']]}])
            except StackError as e:
                logger.warning(f"Failed to describe ENIs for security group {sg['GroupId']}: {e}")
                continue
            for eni in enis.get('NetworkInterfaces', []):
                if not default_sg_id:
                    break
                try:
                    self._call('ModifyNetworkInterfaceAttribute',
                               self.client.modify_network_interface_attribute,
                               NetworkInterfaceId=eni['NetworkInterfaceId'], Groups=[default_sg_id])
                except StackError as e:
                    logger.warning(f"Failed to modify ENI {eni['NetworkInterfaceId']}: {e}")

        failures = []
        for sg in groups:
            try:
                self._call(f"DeleteSecurityGroup {sg['GroupId']}", self.client.delete_security_group,
                           GroupId=sg['GroupId'])
            except StackError as e:
                logger.warning(f"Failed to delete security group {sg['GroupId']}: {e}")
                failures.append(f"{sg['GroupId']}: {e}")
        self._raise_failures(vpc_id, 'security group(s)', failures)
        logger.info(f"Deleted {len(groups)} security groups")

    def delete_subnets(self, vpc_id: str) -> None:
        resp = self._call('DescribeSubnets', self.client.describe_subnets, Filters=_vpc_filter(vpc_id))
        subnets = resp.get('Subnets', [])
        failures = []
        for subnet in subnets:
            try:
                self._call(f"DeleteSubnet {subnet['SubnetId']}", self.client.delete_subnet,
                           SubnetId=subnet['SubnetId'])
            except StackError as e:
                logger.warning(f"Failed to delete subnet {subnet['SubnetId']}: {e}")
                failures.append(f"{subnet['SubnetId']}: {e}")
        self._raise_failures(vpc_id, 'subnet(s)', failures)
        logger.info(f"Deleted {len(subnets)} subnets")

    def delete_route_tables(self, vpc_id: str) -> None:
        resp = self._call('DescribeRouteTables', self.client.describe_route_tables,
                          Filters=_vpc_filter(vpc_id))
        main_id = ''
        tables = []
        for rt in resp.get('RouteTables', []):
            if any(a.get('Main') for a in rt.get('Associations', [])):
                main_id = rt['RouteTableId']
            else:
                tables.append(rt)

        failures = []
        for rt in tables:
            rt_id = rt['RouteTableId']
            for assoc in rt.get('Associations', []):
                assoc_id = assoc.get('RouteTableAssociationId')
                if not assoc_id:
                    continue
                try:
                    if main_id:
                        self._call('ReplaceRouteTableAssociation',
                                   self.client.replace_route_table_association,
                                   AssociationId=assoc_id, RouteTableId=main_id)
                    else:
                        self._call('DisassociateRouteTable', self.client.disassociate_route_table,
                                   AssociationId=assoc_id)
                except StackError as e:
                    logger.warning(f"Failed to move association {assoc_id} off {rt_id}: {e}")
            try:
                self._call(f'DeleteRouteTable {rt_id}', self.client.delete_route_table, RouteTableId=rt_id)
            except StackError as e:
                logger.warning(f"Failed to delete route table {rt_id}: {e}")
                failures.append(f"{rt_id}: {e}")
        self._raise_failures(vpc_id, 'route table(s)', failures)
        logger.info(f"Deleted {len(tables)} route tables")

    def delete_internet_gateways(self, vpc_id: str) -> None:
        resp = self._call('DescribeInternetGateways', self.client.describe_internet_gateways,
                          Filters=_vpc_filter(vpc_id, 'attachment.vpc-id'))
        gateways = resp.get('InternetGateways', [])
        failures = []
        for igw in gateways:
            igw_id = igw['InternetGatewayId']
            try:
                self._call(f'DetachInternetGateway {igw_id}', self.client.detach_internet_gateway,
                           InternetGatewayId=igw_id, VpcId=vpc_id)
            except StackError as e:
                logger.warning(f"Failed to detach internet gateway {igw_id}: {e}")
            try:
                self._call(f'DeleteInternetGateway {igw_id}', self.client.delete_internet_gateway,
                           InternetGatewayId=igw_id)
            except StackError as e:
                logger.warning(f"Failed to delete internet gateway {igw_id}: {e}")
                failures.append(f"{igw_id}: {e}")
        self._raise_failures(vpc_id, 'internet gateway(s)', failures)
        logger.info(f"Deleted {len(gateways)} internet gateways")

    def delete_vpc(self, vpc_id: str) -> None:
        try:
            self.vpc_retry.call(
                lambda: self.client.delete_vpc(VpcId=vpc_id),
                description=f'Delete VPC {vpc_id}',
            )
        except RetryError as e:
            raise StackError(
                f"failed to delete VPC {vpc_id} after {e.attempts} attempts: {e.last_error}",
                resource=vpc_id,
                operation='DeleteVpc',
            ) from e.last_error
        logger.info(f"Successfully deleted VPC: {vpc_id}")


def delete_environment(
    env: Environment,
    client,
    config: DriverConfig,
    deadline: Deadline,
    save: Optional[Callable[[Environment], None]] = None,
    deleter: Optional[StackDeleter] = None,
    elb_client=None,
) -> Environment:
    """Delete the stack recorded in env and set the Terminated condition.

    Raises:
        StackError: No vpc-id recorded, or deletion failed (Degraded recorded)
        OperationCancelled: Deadline expired or interrupted (Degraded recorded)
    """
    save = save or (lambda _env: None)
    vpc_id = env.status.get_property(VPC_ID)
    if not vpc_id:
        raise StackError(f"environment '{env.name}' has no recorded vpc-id", operation='delete')

    deleter = deleter or StackDeleter.from_config(client, config, deadline, elb_client=elb_client)
    try:
        deleter.delete_vpc_resources(vpc_id)
    except OperationCancelled as e:
        mark_degraded(env, 'Cancelled', f"delete: {e}")
        save(env)
        raise
    except StackError as e:
        mark_degraded(env, 'DeleteFailed', str(e))
        save(env)
        raise

    mark_terminated(env)
    save(env)
    logger.info(f"Environment '{env.name}' terminated")
    return env
