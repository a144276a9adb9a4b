"""
VM provisioning

Creates, powers on and destroys VMs. Every vCenter task is awaited to
completion with the configured deadline and a failure is raised as
TaskFailure; nothing here terminates the process.
"""

import logging
from typing import Any, Optional

from pyVmomi import vim, vmodl

from vsphere_instance.config import Settings, settings as default_settings
from vsphere_instance.errors import DeviceAttachFailure, ResourceNotFound, TaskFailure, format_task_error
from vsphere_instance.models.instance import InstanceSpec
from vsphere_instance.vcenter.devices import DeviceComposer, datastore_path, scsi_controller_spec
from vsphere_instance.vcenter.namespace import GroupNamespace, build_annotation
from vsphere_instance.vcenter.resolver import ResolvedResources
from vsphere_instance.vcenter.tasks import wait_for_task

logger = logging.getLogger(__name__)


class VMProvisioner:
    """Submits create / power / destroy tasks to vCenter."""

    def __init__(self, connection, namespace: GroupNamespace,
                 devices: Optional[DeviceComposer] = None,
                 settings: Optional[Settings] = None):
        self.connection = connection
        self.namespace = namespace
        self.settings = settings or default_settings
        self.devices = devices or DeviceComposer(self.settings)

    def _wait(self, task: Any, operation: str) -> Any:
        return wait_for_task(
            task,
            operation,
            timeout=self.settings.task_timeout_seconds,
            poll_interval=self.settings.task_poll_interval,
        )

    def build_config_spec(self, spec: InstanceSpec, resources: ResolvedResources,
                          vm_name: str, group_tag: str) -> Any:
        """Build the VirtualMachineConfigSpec for a new VM."""
        config = vim.vm.ConfigSpec()
        config.name = vm_name
        config.guestId = self.settings.guest_id
        config.files = vim.vm.FileInfo()
        config.files.vmPathName = datastore_path(resources.datastore_name)
        config.numCPUs = spec.cpus
        config.memoryMB = spec.memory_mb
        config.annotation = build_annotation(group_tag, spec.annotation)
        config.deviceChange = [scsi_controller_spec()]
        return config

    def provision(self, spec: InstanceSpec, resources: ResolvedResources,
                  group_tag: str, vm_name: str) -> str:
        """
        Create a VM, attach its devices and optionally power it on.

        A failure after the VM exists removes the VM again before the error
        is raised, so no half-built instance is left in the group folder.

        Args:
            spec: Parsed InstanceSpec
            resources: Resources resolved for this call
            group_tag: Group the VM belongs to
            vm_name: Generated VM name

        Returns:
            The VM name (instance identity)

        Raises:
            TaskFailure: Create or power-on task failed
            DeviceAttachFailure: A device could not be attached
            ResourceNotFound: The group folder could not be located
        """
        config = self.build_config_spec(spec, resources, vm_name, group_tag)
        folder = self.namespace.locate(resources.datacenter, group_tag)

        logger.info(f"Creating VM {vm_name} on {resources.host_name} ({spec.cpus} vCPU, {spec.memory_mb}MB)")
        try:
            task = folder.CreateVM_Task(config=config, pool=resources.resource_pool, host=resources.host)
        except vmodl.MethodFault as e:
            message, fault_type = format_task_error(e)
            raise TaskFailure(f"Creating VM {vm_name}", message, fault_type=fault_type)
        vm = self._wait(task, f"Creating VM {vm_name}")

        try:
            stages = self.devices.attach_all(vm, vm_name, spec, resources)
            logger.debug(f"Devices attached to {vm_name}: {', '.join(stages)}")

            if spec.power_on:
                logger.info(f"Powering on VM {vm_name}")
                self.power_on(vm, vm_name)
        except (DeviceAttachFailure, TaskFailure) as e:
            logger.error(f"Provisioning {vm_name} failed after create, removing it: {e}")
            e.vm_name = vm_name
            self._discard(vm, vm_name)
            raise
        return vm_name

    def _discard(self, vm: Any, vm_name: str):
        """Remove a partially provisioned VM; a failure here is logged, not raised."""
        try:
            if vm.runtime.powerState == vim.VirtualMachinePowerState.poweredOn:
                self.power_off(vm, vm_name)
            self._wait(vm.Destroy_Task(), f"Destroying VM {vm_name}")
        except (TaskFailure, vmodl.MethodFault) as e:
            logger.error(f"Could not remove partially provisioned VM {vm_name}: {e}")

    def power_on(self, vm: Any, vm_name: str):
        try:
            task = vm.PowerOnVM_Task()
        except vmodl.MethodFault as e:
            message, fault_type = format_task_error(e)
            raise TaskFailure(f"Powering on VM {vm_name}", message, fault_type=fault_type)
        self._wait(task, f"Powering on VM {vm_name}")

    def power_off(self, vm: Any, vm_name: str):
        try:
            task = vm.PowerOffVM_Task()
        except vmodl.MethodFault as e:
            message, fault_type = format_task_error(e)
            raise TaskFailure(f"Powering off VM {vm_name}", message, fault_type=fault_type)
        self._wait(task, f"Powering off VM {vm_name}")

    def destroy(self, datacenter: Any, vm_name: str):
        """
        Destroy a VM by name, powering it off first when needed.

        Raises:
            ResourceNotFound: No VM with this name exists
            TaskFailure: Power-off or destroy task failed
        """
        vm = self.namespace.find_vm(datacenter, vm_name)
        if vm is None:
            raise ResourceNotFound("Virtual machine", vm_name)

        if vm.runtime.powerState == vim.VirtualMachinePowerState.poweredOn:
            logger.info(f"Powering off VM {vm_name} before destroy")
            self.power_off(vm, vm_name)

        logger.info(f"Destroying VM {vm_name}")
        try:
            task = vm.Destroy_Task()
        except vmodl.MethodFault as e:
            message, fault_type = format_task_error(e)
            raise TaskFailure(f"Destroying VM {vm_name}", message, fault_type=fault_type)
        self._wait(task, f"Destroying VM {vm_name}")
