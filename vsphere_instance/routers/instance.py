"""
Instance lifecycle endpoints.
"""

import logging
import threading
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from vsphere_instance.models.instance import (
    DescribeRequest,
    DescribeResponse,
    DestroyRequest,
    LabelRequest,
    ProvisionRequest,
    ProvisionResponse,
    VendorInfo,
)
from vsphere_instance.plugin import InstancePlugin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["instance"])


class InfoResponse(BaseModel):
    vendor: VendorInfo
    state: str
    example_properties: Dict[str, Any]


class OkResponse(BaseModel):
    success: bool = True


_plugin: Optional[InstancePlugin] = None
_plugin_lock = threading.Lock()


def get_plugin() -> InstancePlugin:
    """Return the process-wide plugin instance, creating and starting it once."""
    global _plugin
    with _plugin_lock:
        if _plugin is None:
            plugin = InstancePlugin()
            plugin.start()
            _plugin = plugin
        return _plugin


@router.get("/info", response_model=InfoResponse)
def info(plugin: InstancePlugin = Depends(get_plugin)):
    """Vendor information and example instance properties."""
    return InfoResponse(
        vendor=plugin.vendor_info(),
        state=plugin.state.value,
        example_properties=plugin.example_properties(),
    )


@router.post("/instance/validate", response_model=OkResponse)
def validate(properties: Any = Body(None), plugin: InstancePlugin = Depends(get_plugin)):
    """Validate an instance properties blob."""
    plugin.validate(properties)
    return OkResponse()


@router.post("/instance/provision", response_model=ProvisionResponse)
def provision(request: ProvisionRequest, plugin: InstancePlugin = Depends(get_plugin)):
    """Provision a new VM and return its ID."""
    instance_id = plugin.provision(request)
    return ProvisionResponse(id=instance_id)


@router.post("/instance/label", response_model=OkResponse)
def label(request: LabelRequest, plugin: InstancePlugin = Depends(get_plugin)):
    plugin.label(request.instance, request.labels)
    return OkResponse()


@router.post("/instance/destroy", response_model=OkResponse)
def destroy(request: DestroyRequest, plugin: InstancePlugin = Depends(get_plugin)):
    plugin.destroy(request.instance, request.context)
    return OkResponse()


@router.post("/instance/describe", response_model=DescribeResponse)
def describe(request: DescribeRequest, plugin: InstancePlugin = Depends(get_plugin)):
    """Describe the VMs of the group named in the tags."""
    descriptions = plugin.describe_instances(request.tags, request.properties)
    return DescribeResponse(descriptions=descriptions, count=len(descriptions))
