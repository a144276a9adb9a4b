"""
vSphere instance plugin

Exposes the lifecycle used by the orchestrator (validate, provision, label,
destroy, describe) on top of the vCenter components:

    parser -> resolver -> provisioner -> device composer -> vCenter

The plugin moves through uninitialized -> connected -> ready. Resources are
resolved again on every provision call and passed down explicitly.
"""

import json
import logging
import random
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from pyVmomi import vmodl

from vsphere_instance import __version__
from vsphere_instance.config import Settings, settings as default_settings
from vsphere_instance.errors import ConfigurationError, PluginError
from vsphere_instance.models.instance import (
    GROUP_TAG_KEYS,
    InstanceDescription,
    ProvisionRequest,
    VendorInfo,
    group_from_tags,
)
from vsphere_instance.parser import InstanceSpecParser
from vsphere_instance.vcenter.connection import ConnectionManager
from vsphere_instance.vcenter.devices import DeviceComposer
from vsphere_instance.vcenter.namespace import GroupNamespace, group_of
from vsphere_instance.vcenter.provisioner import VMProvisioner
from vsphere_instance.vcenter.resolver import ResourceResolver

logger = logging.getLogger(__name__)

VENDOR_NAME = "infrakit-instance-vSphere"
VENDOR_URL = "https://github.com/docker/infrakit"


class PluginState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    READY = "ready"


def decode_properties(blob: Any) -> Dict[str, Any]:
    """
    Decode a properties blob into a generic map.

    Accepts a JSON string/bytes or an already decoded mapping.

    Raises:
        ConfigurationError: If the blob is not a JSON object
    """
    if blob is None:
        return {}
    if isinstance(blob, (bytes, bytearray)):
        try:
            blob = blob.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ConfigurationError(f"Invalid instance properties: {e}", violations=[str(e)])
    if isinstance(blob, str):
        if not blob.strip():
            return {}
        try:
            blob = json.loads(blob)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid instance properties: {e}", violations=[str(e)])
    if not isinstance(blob, dict):
        raise ConfigurationError(
            "Invalid instance properties: expected an object",
            violations=[f"Expected an object, got {type(blob).__name__}"],
        )
    return blob


class InstancePlugin:
    """VMware vSphere instance plugin."""

    def __init__(self, settings: Optional[Settings] = None,
                 connection: Optional[ConnectionManager] = None,
                 resolver: Optional[ResourceResolver] = None,
                 namespace: Optional[GroupNamespace] = None,
                 provisioner: Optional[VMProvisioner] = None,
                 parser: Optional[InstanceSpecParser] = None):
        self.settings = settings or default_settings
        self.connection = connection or ConnectionManager(self.settings)
        self.resolver = resolver or ResourceResolver(self.connection, self.settings)
        self.namespace = namespace or GroupNamespace(self.connection, self.settings)
        self.provisioner = provisioner or VMProvisioner(
            self.connection, self.namespace, DeviceComposer(self.settings), self.settings
        )
        self.parser = parser or InstanceSpecParser(self.settings)
        self.state = PluginState.UNINITIALIZED
        self._random = random.SystemRandom()

    # =========================================================================
    # Lifecycle state
    # =========================================================================

    def start(self) -> PluginState:
        """Connect with the startup URL if one is configured."""
        if not self.settings.vcenter_url:
            logger.warning("VCURL is not set, connecting on first provision using the vCenterURL property")
            return self.state
        try:
            self._ensure_connected()
        except PluginError as e:
            logger.error(f"vCenter connection failed at startup: {e}")
        return self.state

    def _ensure_connected(self, url: Optional[str] = None):
        self.connection.connect(url)
        if self.state == PluginState.UNINITIALIZED:
            self.state = PluginState.CONNECTED

    # =========================================================================
    # Plugin metadata
    # =========================================================================

    def vendor_info(self) -> VendorInfo:
        return VendorInfo(name=VENDOR_NAME, version=__version__, url=VENDOR_URL)

    def example_properties(self) -> Dict[str, Any]:
        """Example instance properties, seeded from the startup settings."""
        example = {
            "Datastore": self.settings.datastore or "datastore1",
            "Hostname": self.settings.hostname or "esxi01.example.com",
            "Network": self.settings.network or "VM Network",
            "Annotation": "Created by the vSphere instance plugin",
            "vmPrefix": self.settings.vm_prefix,
            "CPUs": self.settings.cpus,
            "Memory": self.settings.memory_mb,
            "persistentSz": self.settings.persistent_size_mb,
        }
        if self.settings.iso_path:
            example["isoPath"] = self.settings.iso_path
        return example

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    def validate(self, blob: Any) -> Dict[str, Any]:
        """Validate a properties blob; only checks that it decodes to a map."""
        properties = decode_properties(blob)
        logger.debug(f"Validated: {properties}")
        return properties

    def generate_name(self, prefix: str) -> str:
        """Return "<prefix>-<random 63-bit integer>"."""
        prefix = (prefix or "vm").rstrip("-") or "vm"
        return f"{prefix}-{self._random.getrandbits(63)}"

    def provision(self, request: Union[ProvisionRequest, Dict[str, Any]]) -> str:
        """
        Provision a new VM.

        Args:
            request: ProvisionRequest or a dict with Tags/Properties/LogicalID

        Returns:
            The instance ID (VM name)

        Raises:
            ConfigurationError: Invalid properties, raised before any vCenter call
            VCenterConnectionError, ResourceNotFound, TaskFailure, DeviceAttachFailure
        """
        if not isinstance(request, ProvisionRequest):
            try:
                request = ProvisionRequest.model_validate(request)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid provision request: {e}", violations=[str(e)])

        properties = decode_properties(request.properties)
        spec = self.parser.parse(properties)

        self._ensure_connected(spec.vcenter_url)
        resources = self.resolver.resolve(spec.datastore, spec.hostname, spec.network)
        self.state = PluginState.READY

        group_tag = request.group_tag()
        vm_name = self.generate_name(spec.vm_prefix)
        if group_tag:
            logger.info(f"Adding {vm_name} to Group {group_tag}")

        return self.provisioner.provision(spec, resources, group_tag, vm_name)

    def label(self, instance_id: str, labels: Dict[str, str]):
        """Labels are not persisted; VMs only carry their group tag."""
        logger.debug(f"label {instance_id} with {labels} ignored, no tag store available")

    def destroy(self, instance_id: str, context: Optional[str] = None):
        """Destroy the VM with the given ID."""
        logger.debug(f"destroy {instance_id} (context={context})")
        self._ensure_connected()
        datacenter = self.resolver.datacenter()
        self.provisioner.destroy(datacenter, instance_id)

    def describe_instances(self, tags: Optional[Dict[str, str]] = None,
                           include_properties: bool = False) -> List[InstanceDescription]:
        """
        Describe the VMs matching the group in tags.

        Only the group tag is stored on a VM, so it is the only tag key that
        filters: a VM matches when its annotation group equals the requested
        group. Other keys are ignored. An empty tag map lists every VM in the
        datacenter.
        """
        tags = tags or {}
        logger.debug(f"describe-instances {tags}")
        group_tag = group_from_tags(tags)
        group_key = next((key for key in GROUP_TAG_KEYS if tags.get(key)), GROUP_TAG_KEYS[0])

        self._ensure_connected()
        datacenter = self.resolver.datacenter()
        lookup = self.namespace.find_instances(datacenter, group_tag)

        descriptions = []
        for vm in lookup.vms:
            try:
                name = vm.name
                vm_group = group_of(vm)
                if group_tag and not lookup.group_scoped and vm_group != group_tag:
                    continue
                description = InstanceDescription(
                    id=name,
                    logical_id=name,
                    tags={group_key: vm_group} if vm_group else {},
                )
                if include_properties:
                    description.properties = self._vm_properties(vm)
            except vmodl.fault.ManagedObjectNotFound:
                logger.debug("VM disappeared while describing instances, skipping")
                continue
            descriptions.append(description)
        return descriptions

    def _vm_properties(self, vm: Any) -> Dict[str, Any]:
        config = vm.config
        return {
            "numCPU": config.hardware.numCPU if config else None,
            "memoryMB": config.hardware.memoryMB if config else None,
            "powerState": str(vm.runtime.powerState),
            "annotation": config.annotation if config else None,
        }
