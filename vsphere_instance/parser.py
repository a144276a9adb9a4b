"""
Instance spec parser

Validates a generic property map against the InstanceProperties schema and
normalises it into an InstanceSpec, applying the startup defaults for every
optional key that was not set. Parsing never contacts vCenter.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from vsphere_instance.config import Settings, settings as default_settings
from vsphere_instance.errors import ConfigurationError
from vsphere_instance.models.instance import InstanceProperties, InstanceSpec

logger = logging.getLogger(__name__)


def _format_violations(error: ValidationError) -> List[str]:
    """Turn a pydantic ValidationError into one line per violation."""
    violations = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "properties"
        if item.get("type") == "missing":
            violations.append(f"Property '{location}' must be set")
        else:
            violations.append(f"Property '{location}': {item.get('msg')}")
    return violations


class InstanceSpecParser:
    """Parses instance properties into an InstanceSpec."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def parse(self, properties: Optional[Dict[str, Any]]) -> InstanceSpec:
        """
        Parse and validate instance properties.

        Args:
            properties: Decoded properties blob (may be None)

        Returns:
            InstanceSpec with defaults applied

        Raises:
            ConfigurationError: Listing every violation found in the properties
        """
        if properties is None:
            properties = {}
        if not isinstance(properties, dict):
            raise ConfigurationError(
                "Instance properties must be an object",
                violations=[f"Expected an object, got {type(properties).__name__}"],
            )

        violations: List[str] = []
        props = None
        try:
            props = InstanceProperties.model_validate(properties)
        except ValidationError as e:
            violations.extend(_format_violations(e))

        url = properties.get("vCenterURL") or self.settings.default_url()
        if not url:
            violations.append("Environment variable VCURL or property 'vCenterURL' must be set")

        if violations:
            logger.error(f"Invalid instance properties: {'; '.join(violations)}")
            raise ConfigurationError(
                f"Invalid instance properties: {'; '.join(violations)}",
                violations=violations,
            )

        logger.debug(f"Datastore set to {props.datastore}, host set to {props.hostname}")

        network = props.network if props.network is not None else (self.settings.network or None)
        if not network:
            logger.warning("The property 'Network' hasn't been set, no networks will be attached to VM")

        iso_path = props.iso_path if props.iso_path is not None else (self.settings.iso_path or None)
        if not iso_path:
            logger.debug("The property 'isoPath' hasn't been set, no ISO will be attached to VM")

        return InstanceSpec(
            vcenter_url=props.vcenter_url or url,
            datastore=props.datastore,
            hostname=props.hostname,
            network=network or None,
            annotation=props.annotation or "",
            vm_prefix=props.vm_prefix or self.settings.vm_prefix or "vm",
            iso_path=iso_path or None,
            cpus=props.cpus if props.cpus is not None else self.settings.cpus,
            memory_mb=props.memory_mb if props.memory_mb is not None else self.settings.memory_mb,
            persistent_size_mb=(
                props.persistent_size_mb
                if props.persistent_size_mb is not None
                else self.settings.persistent_size_mb
            ),
            power_on=self.settings.power_on,
        )
