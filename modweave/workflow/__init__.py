"""Cross-module workflow templates, instances and the engine that drives them."""

from .engine import SLA_ACTOR, SLA_BREACH, WorkflowEngine
from .models import (
    HistoryEntry,
    InstanceStatus,
    Step,
    StepType,
    SweepReport,
    Transition,
    WorkflowInstance,
    WorkflowStatistics,
    WorkflowTemplate,
)
from .templates import permit_application_template

__all__ = [
    "HistoryEntry",
    "InstanceStatus",
    "Step",
    "StepType",
    "SweepReport",
    "Transition",
    "WorkflowEngine",
    "WorkflowInstance",
    "WorkflowStatistics",
    "WorkflowTemplate",
    "SLA_ACTOR",
    "SLA_BREACH",
    "permit_application_template",
]
