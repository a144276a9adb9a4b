"""vCenter task waiting"""

import logging
import time
from typing import Any, Optional

from pyVmomi import vim

from vsphere_instance.errors import TaskFailure, format_task_error

logger = logging.getLogger(__name__)


def wait_for_task(task: Any, operation: str, timeout: Optional[float] = 600,
                  poll_interval: float = 2) -> Any:
    """
    Block until a vCenter task completes.

    Args:
        task: vim.Task returned by a *_Task call
        operation: Short description used in errors, e.g. "Creating VM vm-1"
        timeout: Deadline in seconds, None waits forever
        poll_interval: Seconds between task state checks

    Returns:
        task.info.result on success

    Raises:
        TaskFailure: If the task errors or the deadline passes
    """
    start_time = time.time()
    while True:
        info = task.info
        if info.state == vim.TaskInfo.State.success:
            logger.debug(f"{operation} completed")
            return info.result
        if info.state == vim.TaskInfo.State.error:
            message, fault_type = format_task_error(info.error)
            logger.error(f"{operation} failed: {message}")
            raise TaskFailure(operation, message, fault_type=fault_type)
        if timeout is not None and time.time() - start_time >= timeout:
            logger.error(f"{operation} did not complete within {timeout}s")
            raise TaskFailure(operation, f"Task timeout after {timeout}s", fault_type="timeout")
        time.sleep(poll_interval)
