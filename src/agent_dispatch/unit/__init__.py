"""Execution units: isolated, time-boxed hosts for one agent session."""

from agent_dispatch.unit.base import (
    ExecutionUnit,
    UnitFactory,
    UnitOutcome,
    UnitProvisioningError,
    UnitState,
)
from agent_dispatch.unit.subprocess_unit import (
    ResourceLimits,
    SubprocessExecutionUnit,
    SubprocessUnitFactory,
)

__all__ = [
    "ExecutionUnit",
    "ResourceLimits",
    "SubprocessExecutionUnit",
    "SubprocessUnitFactory",
    "UnitFactory",
    "UnitOutcome",
    "UnitProvisioningError",
    "UnitState",
]
