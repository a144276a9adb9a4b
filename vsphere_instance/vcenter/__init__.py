"""vCenter components of the instance plugin"""

from .connection import ConnectionManager
from .devices import DeviceComposer
from .namespace import GroupNamespace, InstanceLookup
from .provisioner import VMProvisioner
from .resolver import ResolvedResources, ResourceResolver

__all__ = [
    'ConnectionManager', 'DeviceComposer', 'GroupNamespace', 'InstanceLookup',
    'VMProvisioner', 'ResolvedResources', 'ResourceResolver',
]
