"""
Group namespace

Instances are placed in a folder per group below the datacenter VM folder:

    <vmFolder>/<instance_folder>/<group tag>

Standalone ESXi hosts do not support folders; there every instance lives in
the base VM folder. Lookups are two-tier: the group folder first, then the
whole datacenter inventory. An inventory-tier result may contain VMs of other
groups and is tagged as such.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pyVmomi import vim, vmodl

from vsphere_instance.config import Settings, settings as default_settings
from vsphere_instance.errors import ResourceNotFound, parse_vcenter_error
from vsphere_instance.vcenter.resolver import list_objects

logger = logging.getLogger(__name__)

TIER_GROUP = "group"
TIER_INVENTORY = "inventory"


@dataclass(frozen=True)
class InstanceLookup:
    """VMs found by a group lookup and the tier that produced them."""
    tier: str
    vms: List[Any] = field(default_factory=list)

    @property
    def group_scoped(self) -> bool:
        return self.tier == TIER_GROUP


def group_of(vm: Any) -> str:
    """Return the group tag stored on the first line of a VM annotation."""
    try:
        annotation = vm.config.annotation if vm.config is not None else ""
    except vmodl.MethodFault:
        return ""
    return (annotation or "").split("\n", 1)[0].strip()


def build_annotation(group_tag: str, annotation: str = "") -> str:
    return f"{group_tag}\n{annotation}"


class GroupNamespace:
    """Organises instances in per-group folders and finds them again."""

    def __init__(self, connection, settings: Optional[Settings] = None):
        self.connection = connection
        self.settings = settings or default_settings

    def _child(self, content: Any, parent: Any, name: str) -> Optional[Any]:
        child = content.searchIndex.FindChild(parent, name)
        if child is None or isinstance(child, vim.VirtualMachine):
            return None
        return child

    def _child_folder(self, content: Any, parent: Any, name: str) -> Any:
        """Find or create a folder; a concurrent create resolves to the existing one."""
        folder = self._child(content, parent, name)
        if folder is not None:
            return folder
        try:
            folder = parent.CreateFolder(name)
            logger.info(f"Created folder {name}")
            return folder
        except vim.fault.DuplicateName as e:
            logger.debug(f"Folder already exists: {name}")
            existing = getattr(e, "object", None) or self._child(content, parent, name)
            if existing is None:
                raise
            return existing

    def locate(self, datacenter: Any, group_tag: str) -> Any:
        """
        Look up or create the folder for a group.

        Args:
            datacenter: Resolved vim.Datacenter
            group_tag: Group the instance belongs to

        Returns:
            vim.Folder for the group, or the base VM folder when folders
            are not supported or no group was given
        """
        base = datacenter.vmFolder
        if not group_tag:
            return base

        content = self.connection.content()
        try:
            root = self._child_folder(content, base, self.settings.instance_folder)
            return self._child_folder(content, root, group_tag)
        except vmodl.fault.NotSupported:
            logger.warning("Folders are not supported on this host, using the base VM folder")
            return base
        except vmodl.MethodFault as e:
            friendly, _ = parse_vcenter_error(e)
            raise ResourceNotFound("Group folder", group_tag, detail=friendly)

    def group_folder(self, content: Any, datacenter: Any, group_tag: str) -> Optional[Any]:
        """Return the existing folder of a group without creating it."""
        root = self._child(content, datacenter.vmFolder, self.settings.instance_folder)
        if root is None or not group_tag:
            return root
        return self._child(content, root, group_tag)

    def find_instances(self, datacenter: Any, group_tag: str) -> InstanceLookup:
        """
        Find the VMs of a group.

        The group folder is searched first. When it is missing or empty the
        whole datacenter inventory is returned with tier "inventory"; callers
        must filter that result before treating it as group membership.
        """
        content = self.connection.content()
        try:
            if group_tag:
                folder = self.group_folder(content, datacenter, group_tag)
                if folder is not None:
                    vms = list_objects(content, folder, [vim.VirtualMachine])
                    if vms:
                        logger.debug(f"Found {len(vms)} VMs in folder of group {group_tag}")
                        return InstanceLookup(TIER_GROUP, vms)

            vms = list_objects(content, datacenter.vmFolder, [vim.VirtualMachine])
        except vmodl.MethodFault as e:
            friendly, _ = parse_vcenter_error(e)
            raise ResourceNotFound("Virtual machines", group_tag, detail=friendly)

        if not vms:
            logger.info("No Virtual Machines found in datacenter")
        return InstanceLookup(TIER_INVENTORY, vms)

    def find_vm(self, datacenter: Any, name: str) -> Optional[Any]:
        """Find a VM by name, below the instance folder first, then anywhere in the datacenter."""
        content = self.connection.content()
        try:
            root = self.group_folder(content, datacenter, "")
            scopes = [root, datacenter.vmFolder] if root is not None else [datacenter.vmFolder]
            for scope in scopes:
                for vm in list_objects(content, scope, [vim.VirtualMachine]):
                    if vm.name == name:
                        return vm
        except vmodl.MethodFault as e:
            friendly, _ = parse_vcenter_error(e)
            raise ResourceNotFound("Virtual machine", name, detail=friendly)
        return None
