"""
vSphere Instance Plugin - VM lifecycle plugin for VMware vCenter / ESXi.

Provides the declarative instance lifecycle used by an orchestrator:
- Validate instance properties
- Provision VMs (create, attach devices, power on)
- Destroy VMs
- Describe VMs belonging to a group
"""

__version__ = "0.5.0"
__author__ = "vSphere Instance Plugin"
