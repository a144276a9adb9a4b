"""
Plugin errors and vSphere fault mapping.

Every failure in the plugin is raised as a PluginError subclass so the
orchestrator keeps control over retry and backoff. vSphere faults are mapped
to operator-friendly messages.
"""

import re
from typing import Any, Dict, List, Optional, Tuple


class PluginError(Exception):
    """Base exception for instance plugin operations"""

    # Set when the failure happened after a VM of this name was created
    vm_name: Optional[str] = None

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class ConfigurationError(PluginError):
    """Missing or invalid instance properties. No remote call was made."""

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(message, error_code="CONFIGURATION")
        self.violations = violations or []


class VCenterConnectionError(PluginError):
    """The vCenter session could not be established or was lost."""

    def __init__(self, message: str):
        super().__init__(message, error_code="CONNECTION")


class ResourceNotFound(PluginError):
    """A datacenter, datastore, host, network, pool or VM could not be found."""

    def __init__(self, kind: str, name: str = "", detail: str = ""):
        label = f"{kind} [{name}]" if name else kind
        message = f"{label} could not be found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, error_code="NOT_FOUND")
        self.kind = kind
        self.name = name


class TaskFailure(PluginError):
    """A vCenter create/destroy/power/reconfigure task reported failure."""

    def __init__(self, operation: str, message: str, fault_type: Optional[str] = None):
        super().__init__(f"{operation} failed: {message}", error_code="TASK_FAILED")
        self.operation = operation
        self.fault_type = fault_type


class DeviceAttachFailure(PluginError):
    """Attaching a device to a freshly created VM failed."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"Unable to attach {stage}: {message}", error_code="DEVICE_ATTACH")
        self.stage = stage


# vSphere faults seen while placing, reconfiguring and removing instances
VCENTER_ERROR_MESSAGES: Dict[str, Dict[str, Any]] = {
    'vim.fault.InvalidLogin': {
        'title': 'Login Rejected',
        'message': 'vCenter rejected the user name or password in the vCenter URL.',
        'is_recoverable': False,
    },
    'vim.fault.NoPermission': {
        'title': 'Missing Privilege',
        'message': 'The plugin account lacks a vCenter privilege needed for this instance operation.',
        'is_recoverable': False,
    },
    'vmodl.fault.NotSupported': {
        'title': 'Not Supported',
        'message': 'The host does not support this call (folders are unavailable on standalone ESXi).',
        'is_recoverable': False,
    },
    'vim.fault.DuplicateName': {
        'title': 'Duplicate Name',
        'message': 'A VM or folder with this name already exists in the target folder.',
        'is_recoverable': True,
    },
    'vim.fault.InvalidDatastorePath': {
        'title': 'Invalid Datastore Path',
        'message': 'The datastore path does not exist. Check the Datastore and isoPath properties.',
        'is_recoverable': False,
    },
    'vim.fault.FileAlreadyExists': {
        'title': 'Disk Already Exists',
        'message': 'A disk file for this VM name is already on the datastore.',
        'is_recoverable': False,
    },
    'vim.fault.InsufficientResourcesFault': {
        'title': 'Insufficient Resources',
        'message': 'The host resource pool cannot fit the requested CPUs or memory.',
        'is_recoverable': True,
    },
    'vim.fault.InvalidPowerState': {
        'title': 'Invalid Power State',
        'message': 'The VM power state does not allow this step.',
        'is_recoverable': True,
    },
    'vmodl.fault.RequestCanceled': {
        'title': 'Canceled',
        'message': 'The vCenter task was canceled before it finished.',
        'is_recoverable': True,
    },
    'vim.fault.Timedout': {
        'title': 'vCenter Timeout',
        'message': 'vCenter gave up waiting for the operation.',
        'is_recoverable': True,
    },
}


def parse_vcenter_error(error: Any) -> Tuple[str, Optional[Dict[str, Any]]]:
    """
    Parse a vCenter exception or fault and return a user-friendly message.

    Returns:
        Tuple of (friendly_message, error_info_dict or None)
    """
    error_str = str(error)
    error_type = type(error).__name__

    for fault_pattern, info in VCENTER_ERROR_MESSAGES.items():
        short_name = fault_pattern.rsplit('.', 1)[-1]
        if fault_pattern in error_type or error_type == short_name or fault_pattern in error_str:
            msg_match = re.search(r"msg\s*=\s*'([^']+)'", error_str)
            actual_msg = msg_match.group(1) if msg_match else None

            return info['message'], {
                'title': info['title'],
                'is_recoverable': info['is_recoverable'],
                'original_message': actual_msg,
                'fault_type': fault_pattern,
            }

    msg_match = re.search(r"msg\s*=\s*'([^']+)'", error_str)
    if msg_match:
        return msg_match.group(1), None

    return error_str, None


def format_task_error(error: Any) -> Tuple[str, Optional[str]]:
    """
    Format a task fault for a TaskFailure.

    Returns:
        Tuple of (message, fault_type or None)
    """
    friendly_msg, info = parse_vcenter_error(error)
    if info:
        detail = f" ({info['original_message']})" if info['original_message'] else ""
        return f"{info['title']}: {friendly_msg}{detail}", info['fault_type']
    return friendly_msg, None
