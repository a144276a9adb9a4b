"""
vCenter resource resolution

Resolves the datacenter, datastore, host, resource pool, base VM folder and
optional network for a provisioning call. Each call returns a new immutable
ResolvedResources; nothing is cached between calls so inventory changes made
outside the plugin are always picked up.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from pyVmomi import vim, vmodl

from vsphere_instance.config import Settings, settings as default_settings
from vsphere_instance.errors import ResourceNotFound, parse_vcenter_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedResources:
    """vCenter objects a VM is placed on, resolved for a single call."""
    datacenter: Any
    datastore: Any
    datastore_name: str
    host: Any
    host_name: str
    resource_pool: Any
    vm_folder: Any
    network: Any = None
    network_name: Optional[str] = None


def list_objects(content: Any, container: Any, vimtype: List[Any]) -> List[Any]:
    """Return all objects of the given types below container (recursive)."""
    view = content.viewManager.CreateContainerView(container, vimtype, True)
    try:
        return list(view.view)
    finally:
        view.Destroy()


class ResourceResolver:
    """Resolves placement resources inside the single datacenter scope."""

    def __init__(self, connection, settings: Optional[Settings] = None):
        """
        Args:
            connection: ConnectionManager holding the vCenter session
            settings: Plugin settings (datacenter name)
        """
        self.connection = connection
        self.settings = settings or default_settings

    def resolve(self, datastore_name: str, host_name: str,
                network_name: Optional[str] = None) -> ResolvedResources:
        """
        Resolve all placement resources for a new VM.

        Args:
            datastore_name: Datastore name, empty selects the only datastore
            host_name: ESXi host name, empty selects the only host
            network_name: Optional network / port group name

        Returns:
            ResolvedResources

        Raises:
            ResourceNotFound: If any resource is absent or ambiguous
            VCenterConnectionError: If the session is gone
        """
        content = self.connection.content()
        try:
            datacenter = self.find_datacenter(content)
            datastore = self.find_datastore(content, datacenter, datastore_name)
            vm_folder = datacenter.vmFolder
            if vm_folder is None:
                raise ResourceNotFound("VM folder", detail="Error locating default datacenter folder")
            host = self.find_host(content, datacenter, host_name)
            resource_pool = self.find_resource_pool(host, host_name)

            network = None
            if network_name:
                network = self.find_network(content, datacenter, network_name)
            else:
                logger.warning("No network name supplied, no networks will be attached to VM")
        except vmodl.MethodFault as e:
            friendly, _ = parse_vcenter_error(e)
            raise ResourceNotFound("vCenter inventory", detail=friendly)

        return ResolvedResources(
            datacenter=datacenter,
            datastore=datastore,
            datastore_name=datastore_name or datastore.name,
            host=host,
            host_name=host_name or host.name,
            resource_pool=resource_pool,
            vm_folder=vm_folder,
            network=network,
            network_name=network_name or None,
        )

    def datacenter(self) -> Any:
        """Resolve only the datacenter, for lookups that need no placement."""
        content = self.connection.content()
        try:
            return self.find_datacenter(content)
        except vmodl.MethodFault as e:
            friendly, _ = parse_vcenter_error(e)
            raise ResourceNotFound("Datacenter", detail=friendly)

    def find_datacenter(self, content: Any) -> Any:
        """Find the one and only datacenter, or the configured one."""
        datacenters = list_objects(content, content.rootFolder, [vim.Datacenter])
        wanted = self.settings.datacenter
        if wanted:
            for dc in datacenters:
                if dc.name == wanted:
                    return dc
            raise ResourceNotFound("Datacenter", wanted)

        if not datacenters:
            raise ResourceNotFound("Datacenter", detail="No Datacenter instance could be found inside of vCenter")
        if len(datacenters) > 1:
            raise ResourceNotFound(
                "Datacenter",
                detail=f"default datacenter resolves to {len(datacenters)} instances, set VCDATACENTER",
            )
        return datacenters[0]

    def _find_in_datacenter(self, content: Any, folder: Any, vimtype: List[Any],
                            kind: str, name: str) -> Any:
        objects = list_objects(content, folder, vimtype)
        if name:
            for obj in objects:
                if obj.name == name:
                    logger.debug(f"Found {kind} [{name}]")
                    return obj
            raise ResourceNotFound(kind, name)

        if len(objects) == 1:
            logger.debug(f"Using default {kind} [{objects[0].name}]")
            return objects[0]
        if not objects:
            raise ResourceNotFound(kind, detail="no default found")
        raise ResourceNotFound(kind, detail=f"default resolves to {len(objects)} instances, a name is required")

    def find_datastore(self, content: Any, datacenter: Any, name: str) -> Any:
        return self._find_in_datacenter(content, datacenter.datastoreFolder, [vim.Datastore], "Datastore", name)

    def find_host(self, content: Any, datacenter: Any, name: str) -> Any:
        return self._find_in_datacenter(content, datacenter.hostFolder, [vim.HostSystem], "vSphere host", name)

    def find_network(self, content: Any, datacenter: Any, name: str) -> Any:
        return self._find_in_datacenter(content, datacenter.networkFolder, [vim.Network], "Network", name)

    def find_resource_pool(self, host: Any, host_name: str = "") -> Any:
        """Find the resource pool of the compute resource owning the host."""
        compute = host.parent
        pool = getattr(compute, "resourcePool", None) if compute is not None else None
        if pool is None:
            raise ResourceNotFound("Resource pool", host_name, detail="Error locating default resource pool")
        return pool
