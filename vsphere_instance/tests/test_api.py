import threading
import time
import unittest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from vsphere_instance.errors import (
    ConfigurationError,
    DeviceAttachFailure,
    ResourceNotFound,
    TaskFailure,
    VCenterConnectionError,
)
from vsphere_instance.main import app
from vsphere_instance.models.instance import InstanceDescription, VendorInfo
from vsphere_instance.plugin import PluginState
from vsphere_instance.routers import instance as instance_router
from vsphere_instance.routers.instance import get_plugin


class InstanceApiTests(unittest.TestCase):
    def setUp(self):
        self.plugin = MagicMock()
        self.plugin.state = PluginState.CONNECTED
        app.dependency_overrides[get_plugin] = lambda: self.plugin
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()

    def test_info(self):
        self.plugin.vendor_info.return_value = VendorInfo(
            name="infrakit-instance-vSphere", version="0.5.0", url="https://github.com/docker/infrakit"
        )
        self.plugin.example_properties.return_value = {"Datastore": "ds1"}

        response = self.client.get("/v1/info")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["vendor"]["name"], "infrakit-instance-vSphere")
        self.assertEqual(body["state"], "connected")
        self.assertEqual(body["example_properties"], {"Datastore": "ds1"})

    def test_provision(self):
        self.plugin.provision.return_value = "vm-42"

        response = self.client.post("/v1/instance/provision", json={
            "Tags": {"infrakit.group": "workers"},
            "Properties": {"Datastore": "ds1", "Hostname": "esx1"},
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ID": "vm-42"})
        request = self.plugin.provision.call_args.args[0]
        self.assertEqual(request.group_tag(), "workers")

    def test_configuration_error_lists_violations(self):
        self.plugin.provision.side_effect = ConfigurationError(
            "Invalid instance properties", violations=["Property 'Hostname' must be set"]
        )

        response = self.client.post("/v1/instance/provision", json={"Properties": {"Datastore": "ds1"}})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error_code"], "CONFIGURATION")
        self.assertEqual(response.json()["violations"], ["Property 'Hostname' must be set"])

    def test_error_status_codes(self):
        cases = [
            (ResourceNotFound("Datastore", "ds9"), 404),
            (VCenterConnectionError("Not connected to vCenter"), 502),
            (TaskFailure("Creating VM vm-1", "Insufficient Resources"), 500),
            (DeviceAttachFailure("cdrom", "Invalid datastore path"), 500),
        ]
        for error, status in cases:
            with self.subTest(error=type(error).__name__):
                self.plugin.provision.side_effect = error

                response = self.client.post("/v1/instance/provision", json={"Properties": {}})

                self.assertEqual(response.status_code, status)
                self.assertEqual(response.json()["detail"], error.message)

    def test_validate(self):
        response = self.client.post("/v1/instance/validate", json={"CPUs": 2})

        self.assertEqual(response.status_code, 200)
        self.plugin.validate.assert_called_once_with({"CPUs": 2})

    def test_destroy(self):
        response = self.client.post("/v1/instance/destroy", json={"Instance": "vm-1"})

        self.assertEqual(response.status_code, 200)
        self.plugin.destroy.assert_called_once_with("vm-1", None)

    def test_label(self):
        response = self.client.post("/v1/instance/label", json={"Instance": "vm-1", "Labels": {"a": "b"}})

        self.assertEqual(response.status_code, 200)
        self.plugin.label.assert_called_once_with("vm-1", {"a": "b"})

    def test_describe(self):
        self.plugin.describe_instances.return_value = [
            InstanceDescription(id="vm-1", logical_id="vm-1", tags={"infrakit.group": "workers"})
        ]

        response = self.client.post("/v1/instance/describe", json={"Tags": {"infrakit.group": "workers"}})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["descriptions"][0]["ID"], "vm-1")
        self.assertEqual(body["descriptions"][0]["Tags"], {"infrakit.group": "workers"})
        self.plugin.describe_instances.assert_called_once_with({"infrakit.group": "workers"}, False)


class PluginSingletonTests(unittest.TestCase):
    def setUp(self):
        self.saved = instance_router._plugin
        instance_router._plugin = None

    def tearDown(self):
        instance_router._plugin = self.saved

    def test_concurrent_requests_share_one_plugin(self):
        barrier = threading.Barrier(8)
        results = []

        def request():
            barrier.wait()
            results.append(instance_router.get_plugin())

        with patch.object(instance_router, "InstancePlugin") as plugin_class:
            plugin_class.return_value.start.side_effect = lambda: time.sleep(0.05)
            threads = [threading.Thread(target=request) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        plugin_class.assert_called_once_with()
        plugin_class.return_value.start.assert_called_once_with()
        self.assertEqual(len(results), 8)
        self.assertTrue(all(result is plugin_class.return_value for result in results))

    def test_failed_start_is_retried(self):
        with patch.object(instance_router, "InstancePlugin") as plugin_class:
            plugin_class.return_value.start.side_effect = [RuntimeError("vCenter unreachable"), None]

            with self.assertRaises(RuntimeError):
                instance_router.get_plugin()
            self.assertIs(instance_router.get_plugin(), plugin_class.return_value)

        self.assertEqual(plugin_class.call_count, 2)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
