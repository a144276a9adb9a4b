"""
Pydantic models for instance properties, provision requests and descriptions.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


SCHEMA_VERSION = 1

# Tag keys carrying the group an instance belongs to, in lookup order
GROUP_TAG_KEYS = ("infrakit.group", "group")


class InstanceProperties(BaseModel):
    """
    Versioned schema of the instance properties blob.

    Keys are case-sensitive and match the property names used in group
    configurations (Datastore, Hostname, CPUs, ...). A null value is treated
    the same as an absent key.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_version: Literal[1] = Field(SCHEMA_VERSION, alias="schemaVersion")
    vcenter_url: Optional[str] = Field(None, alias="vCenterURL")
    datastore: str = Field(..., alias="Datastore", min_length=1)
    hostname: str = Field(..., alias="Hostname", min_length=1)
    network: Optional[str] = Field(None, alias="Network")
    annotation: Optional[str] = Field(None, alias="Annotation")
    vm_prefix: Optional[str] = Field(None, alias="vmPrefix", min_length=1)
    iso_path: Optional[str] = Field(None, alias="isoPath")
    cpus: Optional[int] = Field(None, alias="CPUs", ge=1)
    memory_mb: Optional[int] = Field(None, alias="Memory", ge=4)
    persistent_size_mb: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("persistentSz", "persistantSZ", "persistent_size_mb"),
        ge=0,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


@dataclass(frozen=True)
class InstanceSpec:
    """Canonical provisioning intent produced by InstanceSpecParser."""
    vcenter_url: str
    datastore: str
    hostname: str
    network: Optional[str] = None
    annotation: str = ""
    vm_prefix: str = "vm"
    iso_path: Optional[str] = None
    cpus: int = 1
    memory_mb: int = 512
    persistent_size_mb: int = 0
    power_on: bool = False


class ProvisionRequest(BaseModel):
    """Provision request as sent by the orchestrator."""

    model_config = ConfigDict(populate_by_name=True)

    tags: Dict[str, str] = Field(default_factory=dict, alias="Tags")
    properties: Any = Field(None, alias="Properties")
    logical_id: Optional[str] = Field(None, alias="LogicalID")

    def group_tag(self) -> str:
        return group_from_tags(self.tags)


class LabelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance: str = Field(..., alias="Instance")
    labels: Dict[str, str] = Field(default_factory=dict, alias="Labels")


class DestroyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance: str = Field(..., alias="Instance")
    context: Optional[str] = Field(None, alias="Context")


class DescribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tags: Dict[str, str] = Field(default_factory=dict, alias="Tags")
    properties: bool = Field(False, alias="Properties")


class InstanceDescription(BaseModel):
    """Description of one VM returned by DescribeInstances."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="ID")
    logical_id: Optional[str] = Field(None, alias="LogicalID")
    tags: Dict[str, str] = Field(default_factory=dict, alias="Tags")
    properties: Optional[Dict[str, Any]] = Field(None, alias="Properties")


class VendorInfo(BaseModel):
    name: str
    version: str
    url: str


class ProvisionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="ID")


class DescribeResponse(BaseModel):
    descriptions: List[InstanceDescription]
    count: int


def group_from_tags(tags: Optional[Dict[str, str]]) -> str:
    """Return the group tag from an orchestrator tag map, or an empty string."""
    if not tags:
        return ""
    for key in GROUP_TAG_KEYS:
        if tags.get(key):
            return tags[key]
    return ""
