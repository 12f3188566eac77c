from opencode_companion.runtime.health import HealthProbe
from opencode_companion.runtime.supervisor import ProcessState, ProcessSupervisor
from opencode_companion.runtime.termination import (
    ProcessGroupTerminator,
    ProcessTreeTerminator,
    TaskkillTreeTerminator,
    select_terminator,
)

__all__ = [
    "HealthProbe",
    "ProcessGroupTerminator",
    "ProcessState",
    "ProcessSupervisor",
    "ProcessTreeTerminator",
    "TaskkillTreeTerminator",
    "select_terminator",
]
