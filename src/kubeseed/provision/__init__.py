"""Idempotent control-plane provisioning.

Only the data model is re-exported here; import the probe, step and engine
modules directly.
"""

from __future__ import annotations

from .models import (
    PREDECESSORS,
    ClusterApi,
    ClusterBootstrapToken,
    Concern,
    ConcernState,
    NodeCondition,
    NodeReadinessRecord,
    ProvisionContext,
    ResetAction,
    ResetReport,
    RunReport,
    Status,
    StepAction,
    StepRecord,
    default_order,
    validate_order,
)

__all__ = [
    "PREDECESSORS",
    "ClusterApi",
    "ClusterBootstrapToken",
    "Concern",
    "ConcernState",
    "NodeCondition",
    "NodeReadinessRecord",
    "ProvisionContext",
    "ResetAction",
    "ResetReport",
    "RunReport",
    "Status",
    "StepAction",
    "StepRecord",
    "default_order",
    "validate_order",
]
