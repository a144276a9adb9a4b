"""Data models for the vSphere instance plugin"""

from .instance import (
    GROUP_TAG_KEYS,
    SCHEMA_VERSION,
    DescribeRequest,
    DescribeResponse,
    DestroyRequest,
    InstanceDescription,
    InstanceProperties,
    InstanceSpec,
    LabelRequest,
    ProvisionRequest,
    ProvisionResponse,
    VendorInfo,
    group_from_tags,
)

__all__ = [
    'GROUP_TAG_KEYS', 'SCHEMA_VERSION', 'DescribeRequest', 'DescribeResponse',
    'DestroyRequest', 'InstanceDescription', 'InstanceProperties', 'InstanceSpec',
    'LabelRequest', 'ProvisionRequest', 'ProvisionResponse', 'VendorInfo',
    'group_from_tags',
]
