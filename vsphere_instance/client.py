"""
HTTP client for a running vSphere instance plugin.

Error responses are raised again as the PluginError subclass named by their
error_code, so callers handle remote and in-process failures the same way.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from vsphere_instance.errors import (
    ConfigurationError,
    DeviceAttachFailure,
    PluginError,
    ResourceNotFound,
    TaskFailure,
    VCenterConnectionError,
)
from vsphere_instance.models.instance import InstanceDescription

logger = logging.getLogger(__name__)


def _raise_for_error(response: requests.Response):
    if response.ok:
        return
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("detail") or response.text or f"HTTP {response.status_code}"
    if not isinstance(message, str):
        # FastAPI request validation errors carry a list of problems
        raise ConfigurationError("Invalid request", violations=[str(item) for item in message])

    error_code = body.get("error_code")
    if error_code == "CONFIGURATION":
        raise ConfigurationError(message, violations=body.get("violations"))
    if error_code == "NOT_FOUND":
        raise ResourceNotFound("Resource", detail=message)
    if error_code == "CONNECTION":
        raise VCenterConnectionError(message)
    if error_code == "TASK_FAILED":
        raise TaskFailure("Plugin request", message)
    if error_code == "DEVICE_ATTACH":
        raise DeviceAttachFailure("device", message)
    raise PluginError(message, error_code=error_code)


class InstanceClient:
    """Calls the /v1 instance endpoints of a plugin."""

    def __init__(self, base_url: str, timeout: float = 900, verify_ssl: bool = True):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.verify = verify_ssl

    def close(self):
        self.session.close()

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.base_url}/v1{path}"
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise PluginError(f"Plugin at {self.base_url} is not reachable: {e}", error_code="UNREACHABLE")
        _raise_for_error(response)
        return response.json()

    def info(self) -> Dict[str, Any]:
        return self._request("GET", "/info")

    def validate(self, properties: Any):
        self._request("POST", "/instance/validate", properties)

    def provision(self, properties: Any, tags: Optional[Dict[str, str]] = None,
                  logical_id: Optional[str] = None) -> str:
        """Provision an instance and return its ID."""
        payload = {"Tags": tags or {}, "Properties": properties}
        if logical_id:
            payload["LogicalID"] = logical_id
        return self._request("POST", "/instance/provision", payload)["ID"]

    def label(self, instance_id: str, labels: Dict[str, str]):
        self._request("POST", "/instance/label", {"Instance": instance_id, "Labels": labels})

    def destroy(self, instance_id: str, context: Optional[str] = None):
        self._request("POST", "/instance/destroy", {"Instance": instance_id, "Context": context})

    def describe_instances(self, tags: Optional[Dict[str, str]] = None,
                           include_properties: bool = False) -> List[InstanceDescription]:
        body = self._request("POST", "/instance/describe",
                             {"Tags": tags or {}, "Properties": include_properties})
        return [InstanceDescription.model_validate(item) for item in body.get("descriptions", [])]
