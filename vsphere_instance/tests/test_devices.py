import unittest
from unittest.mock import MagicMock

from pyVmomi import vim

from vsphere_instance.config import Settings
from vsphere_instance.errors import DeviceAttachFailure
from vsphere_instance.models.instance import InstanceSpec
from vsphere_instance.vcenter.devices import (
    STAGE_CONTROLLER,
    STAGE_DISK,
    STAGE_MEDIA,
    STAGE_NETWORK,
    DeviceComposer,
    cdrom_spec,
    datastore_path,
    network_adapter_spec,
    persistent_disk_spec,
    scsi_controller_spec,
)
from vsphere_instance.vcenter.resolver import ResolvedResources


def make_task(state, result=None, error=None):
    task = MagicMock()
    task.info.state = state
    task.info.result = result
    task.info.error = error
    return task


def scsi_controller(key=1000):
    return vim.vm.device.ParaVirtualSCSIController(key=key, busNumber=0)


def ide_controller(key=200, attached=None):
    return vim.vm.device.VirtualIDEController(key=key, busNumber=0, device=attached or [])


def make_vm(devices):
    vm = MagicMock()
    vm.config.hardware.device = devices
    vm.ReconfigVM_Task.return_value = make_task(vim.TaskInfo.State.success)
    return vm


def make_resources(network=None, network_name=None):
    return ResolvedResources(
        datacenter=MagicMock(),
        datastore=vim.Datastore("datastore-1"),
        datastore_name="ds1",
        host=MagicMock(),
        host_name="esx1",
        resource_pool=MagicMock(),
        vm_folder=MagicMock(),
        network=network,
        network_name=network_name,
    )


def make_spec(**overrides):
    values = {"vcenter_url": "https://root:pw@esx/sdk", "datastore": "ds1", "hostname": "esx1"}
    values.update(overrides)
    return InstanceSpec(**values)


class DeviceSpecTests(unittest.TestCase):
    def test_datastore_path(self):
        self.assertEqual(datastore_path("ds1"), "[ds1]")
        self.assertEqual(datastore_path("ds1", "iso/boot.iso"), "[ds1] iso/boot.iso")

    def test_scsi_controller_is_paravirtual(self):
        spec = scsi_controller_spec()

        self.assertIsInstance(spec.device, vim.vm.device.ParaVirtualSCSIController)
        self.assertEqual(spec.device.busNumber, 0)
        self.assertEqual(spec.operation, vim.vm.device.VirtualDeviceSpec.Operation.add)

    def test_network_adapter_is_vmxnet3(self):
        network = vim.Network("network-1")

        spec = network_adapter_spec(network, "VM Network")

        self.assertIsInstance(spec.device, vim.vm.device.VirtualVmxnet3)
        self.assertEqual(spec.device.backing.deviceName, "VM Network")
        self.assertIs(spec.device.backing.network, network)
        self.assertTrue(spec.device.connectable.startConnected)

    def test_persistent_disk(self):
        spec = persistent_disk_spec([scsi_controller()], "vm-42", vim.Datastore("datastore-1"), "ds1", 2048)

        disk = spec.device
        self.assertIsInstance(disk, vim.vm.device.VirtualDisk)
        self.assertEqual(disk.backing.fileName, "[ds1] vm-42/vm-42.vmdk")
        self.assertEqual(disk.capacityInKB, 2048 * 1024)
        self.assertEqual(disk.controllerKey, 1000)
        self.assertEqual(disk.unitNumber, 0)
        self.assertEqual(spec.fileOperation, vim.vm.device.VirtualDeviceSpec.FileOperation.create)

    def test_persistent_disk_skips_reserved_unit(self):
        controller = scsi_controller()
        disks = [vim.vm.device.VirtualDisk(key=2000 + i, controllerKey=1000, unitNumber=i) for i in range(7)]

        spec = persistent_disk_spec([controller] + disks, "vm-1", vim.Datastore("datastore-1"), "ds1", 10)

        self.assertEqual(spec.device.unitNumber, 8)

    def test_persistent_disk_without_controller(self):
        with self.assertRaises(DeviceAttachFailure) as ctx:
            persistent_disk_spec([ide_controller()], "vm-1", vim.Datastore("datastore-1"), "ds1", 10)
        self.assertEqual(ctx.exception.stage, STAGE_DISK)

    def test_cdrom(self):
        spec = cdrom_spec([scsi_controller(), ide_controller()], vim.Datastore("datastore-1"), "ds1", "boot.iso")

        cdrom = spec.device
        self.assertIsInstance(cdrom, vim.vm.device.VirtualCdrom)
        self.assertEqual(cdrom.backing.fileName, "[ds1] boot.iso")
        self.assertEqual(cdrom.controllerKey, 200)
        self.assertEqual(cdrom.unitNumber, 0)

    def test_cdrom_uses_ide_controller_with_free_unit(self):
        devices = [ide_controller(200, attached=[3000, 3001]), ide_controller(201, attached=[3002])]

        spec = cdrom_spec(devices, vim.Datastore("datastore-1"), "ds1", "boot.iso")

        self.assertEqual(spec.device.controllerKey, 201)
        self.assertEqual(spec.device.unitNumber, 1)

    def test_cdrom_without_ide_controller(self):
        with self.assertRaises(DeviceAttachFailure) as ctx:
            cdrom_spec([scsi_controller()], vim.Datastore("datastore-1"), "ds1", "boot.iso")
        self.assertEqual(ctx.exception.stage, STAGE_MEDIA)


class DeviceComposerTests(unittest.TestCase):
    def setUp(self):
        self.composer = DeviceComposer(Settings(task_poll_interval=0))

    def attached_devices(self, vm):
        return [c.kwargs["spec"].deviceChange[0].device for c in vm.ReconfigVM_Task.call_args_list]

    def test_attaches_in_fixed_order(self):
        vm = make_vm([scsi_controller(), ide_controller()])
        resources = make_resources(vim.Network("network-1"), "VM Network")
        spec = make_spec(persistent_size_mb=1024, iso_path="boot.iso")

        stages = self.composer.attach_all(vm, "vm-1", spec, resources)

        self.assertEqual(stages, [STAGE_CONTROLLER, STAGE_NETWORK, STAGE_DISK, STAGE_MEDIA])
        devices = self.attached_devices(vm)
        self.assertIsInstance(devices[0], vim.vm.device.VirtualVmxnet3)
        self.assertIsInstance(devices[1], vim.vm.device.VirtualDisk)
        self.assertIsInstance(devices[2], vim.vm.device.VirtualCdrom)

    def test_only_requested_devices(self):
        vm = make_vm([scsi_controller(), ide_controller()])

        stages = self.composer.attach_all(vm, "vm-1", make_spec(), make_resources())

        self.assertEqual(stages, [STAGE_CONTROLLER])
        vm.ReconfigVM_Task.assert_not_called()

    def test_missing_controller(self):
        vm = make_vm([ide_controller()])

        with self.assertRaises(DeviceAttachFailure) as ctx:
            self.composer.attach_all(vm, "vm-1", make_spec(iso_path="boot.iso"), make_resources())

        self.assertEqual(ctx.exception.stage, STAGE_CONTROLLER)
        vm.ReconfigVM_Task.assert_not_called()

    def test_failed_reconfigure_names_the_stage(self):
        vm = make_vm([scsi_controller(), ide_controller()])
        fault = vim.fault.InvalidDatastorePath(msg="Invalid datastore path '[ds1] missing.iso'.")
        vm.ReconfigVM_Task.return_value = make_task(vim.TaskInfo.State.error, error=fault)

        with self.assertRaises(DeviceAttachFailure) as ctx:
            self.composer.attach_all(vm, "vm-1", make_spec(iso_path="missing.iso"), make_resources())

        self.assertEqual(ctx.exception.stage, STAGE_MEDIA)
        self.assertIn("Invalid Datastore Path", str(ctx.exception))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
