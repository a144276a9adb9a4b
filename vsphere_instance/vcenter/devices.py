"""
VM device composition

Builds the virtual devices of a new VM in a fixed order:

1. paravirtual SCSI controller (part of the create spec, required)
2. vmxnet3 network adapter, if a network was resolved
3. persistent data disk, if a persistent size was requested
4. CD-ROM backed by an ISO on the datastore, if an ISO path was set

Stages 2-4 are attached after the VM exists, each with its own reconfigure
task. Disk and CD-ROM depend on controllers present on the VM, so the order
must not change.
"""

import logging
from typing import Any, List, Optional

from pyVmomi import vim, vmodl

from vsphere_instance.config import Settings, settings as default_settings
from vsphere_instance.errors import DeviceAttachFailure, TaskFailure, parse_vcenter_error
from vsphere_instance.models.instance import InstanceSpec
from vsphere_instance.vcenter.tasks import wait_for_task

logger = logging.getLogger(__name__)

STAGE_CONTROLLER = "scsi_controller"
STAGE_NETWORK = "network_adapter"
STAGE_DISK = "persistent_disk"
STAGE_MEDIA = "cdrom"

# Temporary keys for new devices; vSphere assigns the real key on creation
SCSI_CONTROLLER_KEY = -100
NIC_KEY = -200
DISK_KEY = -300
CDROM_KEY = -400

# Unit 7 is reserved for the SCSI controller itself
SCSI_RESERVED_UNIT = 7
SCSI_MAX_UNITS = 16
IDE_MAX_UNITS = 2


def datastore_path(datastore_name: str, path: str = "") -> str:
    """Return a datastore path such as "[ds1] vm-1/vm-1.vmdk"."""
    if not path:
        return f"[{datastore_name}]"
    return f"[{datastore_name}] {path}"


def persistent_disk_path(datastore_name: str, vm_name: str) -> str:
    return datastore_path(datastore_name, f"{vm_name}/{vm_name}.vmdk")


def scsi_controller_spec() -> Any:
    """Device spec adding a paravirtual SCSI controller on bus 0."""
    controller = vim.vm.device.ParaVirtualSCSIController()
    controller.key = SCSI_CONTROLLER_KEY
    controller.busNumber = 0
    controller.hotAddRemove = True
    controller.sharedBus = vim.vm.device.VirtualSCSIController.Sharing.noSharing

    spec = vim.vm.device.VirtualDeviceSpec()
    spec.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
    spec.device = controller
    return spec


def network_adapter_spec(network: Any, network_name: Optional[str]) -> Any:
    """Device spec adding a vmxnet3 NIC bound to a port group."""
    nic = vim.vm.device.VirtualVmxnet3()
    nic.key = NIC_KEY
    nic.addressType = "generated"

    if isinstance(network, vim.dvs.DistributedVirtualPortgroup):
        port = vim.dvs.PortConnection()
        port.portgroupKey = network.key
        port.switchUuid = network.config.distributedVirtualSwitch.uuid
        backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo()
        backing.port = port
    else:
        backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo()
        backing.deviceName = network_name or network.name
        backing.network = network
    nic.backing = backing

    nic.connectable = vim.vm.device.VirtualDevice.ConnectInfo()
    nic.connectable.startConnected = True
    nic.connectable.allowGuestControl = True
    nic.connectable.connected = False

    spec = vim.vm.device.VirtualDeviceSpec()
    spec.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
    spec.device = nic
    return spec


def find_scsi_controller(devices: List[Any]) -> Optional[Any]:
    return next((d for d in devices if isinstance(d, vim.vm.device.VirtualSCSIController)), None)


def find_ide_controller(devices: List[Any]) -> Optional[Any]:
    """Return the first IDE controller with a free unit."""
    for device in devices:
        if isinstance(device, vim.vm.device.VirtualIDEController):
            if len(device.device or []) < IDE_MAX_UNITS:
                return device
    return None


def persistent_disk_spec(devices: List[Any], vm_name: str, datastore: Any,
                         datastore_name: str, size_mb: int) -> Any:
    """
    Device spec creating a thin provisioned disk on the SCSI controller.

    Raises:
        DeviceAttachFailure: If the VM has no SCSI controller or no free unit
    """
    controller = find_scsi_controller(devices)
    if controller is None:
        raise DeviceAttachFailure(STAGE_DISK, "Unable to find SCSI device from VM configuration")

    used_units = {d.unitNumber for d in devices if getattr(d, "controllerKey", None) == controller.key}
    unit_number = next(
        (i for i in range(SCSI_MAX_UNITS) if i != SCSI_RESERVED_UNIT and i not in used_units),
        None,
    )
    if unit_number is None:
        raise DeviceAttachFailure(STAGE_DISK, "No available unit number on SCSI controller")

    backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo()
    backing.fileName = persistent_disk_path(datastore_name, vm_name)
    backing.diskMode = "persistent"
    backing.thinProvisioned = True
    backing.datastore = datastore

    disk = vim.vm.device.VirtualDisk()
    disk.key = DISK_KEY
    disk.controllerKey = controller.key
    disk.unitNumber = unit_number
    disk.capacityInKB = size_mb * 1024
    disk.backing = backing

    spec = vim.vm.device.VirtualDeviceSpec()
    spec.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
    spec.fileOperation = vim.vm.device.VirtualDeviceSpec.FileOperation.create
    spec.device = disk
    return spec


def cdrom_spec(devices: List[Any], datastore: Any, datastore_name: str, iso_path: str) -> Any:
    """
    Device spec adding a CD-ROM with the ISO inserted.

    Raises:
        DeviceAttachFailure: If the VM has no IDE controller with a free unit
    """
    ide = find_ide_controller(devices)
    if ide is None:
        raise DeviceAttachFailure(STAGE_MEDIA, "Unable to find IDE device from VM configuration")

    backing = vim.vm.device.VirtualCdrom.IsoBackingInfo()
    backing.fileName = datastore_path(datastore_name, iso_path)
    backing.datastore = datastore

    cdrom = vim.vm.device.VirtualCdrom()
    cdrom.key = CDROM_KEY
    cdrom.controllerKey = ide.key
    cdrom.unitNumber = len(ide.device or [])
    cdrom.backing = backing
    cdrom.connectable = vim.vm.device.VirtualDevice.ConnectInfo()
    cdrom.connectable.startConnected = True
    cdrom.connectable.allowGuestControl = True

    spec = vim.vm.device.VirtualDeviceSpec()
    spec.operation = vim.vm.device.VirtualDeviceSpec.Operation.add
    spec.device = cdrom
    return spec


class DeviceComposer:
    """Attaches the devices of a freshly created VM in a fixed order."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def attach_all(self, vm: Any, vm_name: str, spec: InstanceSpec, resources) -> List[str]:
        """
        Attach every requested device to a new VM.

        Args:
            vm: vim.VirtualMachine returned by the create task
            vm_name: Name of the VM
            spec: Parsed InstanceSpec
            resources: ResolvedResources used to create the VM

        Returns:
            Names of the stages present on the VM, in attachment order

        Raises:
            DeviceAttachFailure: If any stage fails
        """
        stages = [self.verify_controller(vm)]

        if resources.network is not None:
            logger.info(f"Adding VM networking to {vm_name}")
            self._attach(vm, vm_name, STAGE_NETWORK,
                         network_adapter_spec(resources.network, resources.network_name))
            stages.append(STAGE_NETWORK)

        if spec.persistent_size_mb > 0:
            logger.info(f"Adding a {spec.persistent_size_mb}MB persistent disk to {vm_name}")
            disk = persistent_disk_spec(self._devices(vm, STAGE_DISK), vm_name, resources.datastore,
                                        resources.datastore_name, spec.persistent_size_mb)
            self._attach(vm, vm_name, STAGE_DISK, disk)
            stages.append(STAGE_DISK)

        if spec.iso_path:
            logger.info(f"Adding ISO {spec.iso_path} to {vm_name}")
            media = cdrom_spec(self._devices(vm, STAGE_MEDIA), resources.datastore,
                               resources.datastore_name, spec.iso_path)
            self._attach(vm, vm_name, STAGE_MEDIA, media)
            stages.append(STAGE_MEDIA)

        return stages

    def verify_controller(self, vm: Any) -> str:
        """Check the SCSI controller from the create spec is present."""
        if find_scsi_controller(self._devices(vm, STAGE_CONTROLLER)) is None:
            raise DeviceAttachFailure(STAGE_CONTROLLER, "VM was created without a SCSI controller")
        return STAGE_CONTROLLER

    def _devices(self, vm: Any, stage: str) -> List[Any]:
        try:
            return list(vm.config.hardware.device)
        except vmodl.MethodFault as e:
            friendly, _ = parse_vcenter_error(e)
            raise DeviceAttachFailure(stage, f"Unable to read devices from VM configuration: {friendly}")

    def _attach(self, vm: Any, vm_name: str, stage: str, device_spec: Any):
        config_spec = vim.vm.ConfigSpec()
        config_spec.deviceChange = [device_spec]
        try:
            task = vm.ReconfigVM_Task(spec=config_spec)
            wait_for_task(
                task,
                f"Adding {stage} to {vm_name}",
                timeout=self.settings.task_timeout_seconds,
                poll_interval=self.settings.task_poll_interval,
            )
        except TaskFailure as e:
            raise DeviceAttachFailure(stage, e.message)
        except vmodl.MethodFault as e:
            friendly, _ = parse_vcenter_error(e)
            raise DeviceAttachFailure(stage, friendly)
