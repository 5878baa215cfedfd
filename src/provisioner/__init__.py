"""Install the GPU software stack on one host or a kubeadm cluster."""

from provisioner.components import ComponentState, InstallStep, resolve_steps
from provisioner.node import Provisioner, ProvisioningError
from provisioner.cluster import ClusterHealth, ClusterProvisioner, get_cluster_health
from provisioner.remote import RemoteShell, RemoteShellError

__all__ = [
    'ClusterHealth',
    'ClusterProvisioner',
    'ComponentState',
    'InstallStep',
    'Provisioner',
    'ProvisioningError',
    'RemoteShell',
    'RemoteShellError',
    'get_cluster_health',
    'resolve_steps',
]
