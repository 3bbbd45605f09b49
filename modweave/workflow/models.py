"""Workflow templates, steps and running instances."""

from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator


class StepType(str, Enum):
    START = "start"
    TASK = "task"
    DECISION = "decision"
    END = "end"


class Step(BaseModel):
    """One node of a template graph.

    ``transitions`` maps an outcome to the next step id. ``next`` is the
    unconditional successor, taken when the step has no keyed transitions
    or completes without an outcome.
    A step bound to ``module``/``action`` is executed by calling that module.
    """

    id: str
    type: StepType = StepType.TASK
    name: Optional[str] = None
    module: Optional[str] = None
    action: Optional[str] = None
    assignee_role: Optional[str] = None
    transitions: Dict[str, str] = Field(default_factory=dict)
    next: Optional[str] = None
    sla: Optional[timedelta] = None
    escalation: Optional[str] = None

    @property
    def bound(self) -> bool:
        return bool(self.module and self.action)

    @property
    def targets(self) -> Set[str]:
        targets = set(self.transitions.values())
        if self.next:
            targets.add(self.next)
        return targets

    def resolve_next(self, outcome: Any) -> Optional[str]:
        """Return the step reached for ``outcome``, or ``None`` if no edge matches.

        An explicit outcome on a step with keyed transitions must match a key.
        """
        if outcome is not None and self.transitions:
            return self.transitions.get(str(outcome))
        if self.next:
            return self.next
        distinct = set(self.transitions.values())
        if len(distinct) == 1:
            return distinct.pop()
        return None

    def outgoing(self) -> List["Transition"]:
        """Edges a caller may take from this step, keyed outcomes first."""
        edges = [Transition(outcome=outcome, target=target) for outcome, target in self.transitions.items()]
        if self.next:
            edges.append(Transition(target=self.next))
        return edges


class WorkflowTemplate(BaseModel):
    """A cross-module workflow as a directed graph of steps."""

    id: str
    name: str
    description: Optional[str] = None
    trigger_module: Optional[str] = None
    steps: Dict[str, Step]

    @field_validator("steps", mode="before")
    @classmethod
    def _key_steps(cls, v: Any) -> Any:
        if isinstance(v, list):
            return {(s.id if isinstance(s, Step) else s["id"]): s for s in v}
        if isinstance(v, dict):
            keyed = {}
            for step_id, step in v.items():
                if isinstance(step, dict) and "id" not in step:
                    step = {**step, "id": step_id}
                keyed[step_id] = step
            return keyed
        return v

    @property
    def start_step(self) -> Step:
        return next(s for s in self.steps.values() if s.type is StepType.START)

    def graph_errors(self) -> List[str]:
        """Structural problems that make the template unusable."""
        errors: List[str] = []
        starts = [s.id for s in self.steps.values() if s.type is StepType.START]
        if len(starts) != 1:
            errors.append(f"Template must have exactly one start step, found {len(starts)}")

        for step_id, step in self.steps.items():
            if step.id != step_id:
                errors.append(f"Step key {step_id!r} does not match step id {step.id!r}")
            for target in sorted(step.targets):
                if target not in self.steps:
                    errors.append(f"Step {step_id} transitions to unknown step {target}")
            if step.escalation is not None:
                if step.escalation not in self.steps:
                    errors.append(f"Step {step_id} escalates to unknown step {step.escalation}")
                elif step.escalation == step_id:
                    errors.append(f"Step {step_id} escalates to itself")
            if step.type is StepType.END:
                if step.targets:
                    errors.append(f"End step {step_id} must not have outgoing transitions")
            elif not step.targets:
                errors.append(f"Step {step_id} has no outgoing transitions")
            if step.type in (StepType.START, StepType.END) and (step.sla or step.escalation):
                errors.append(f"Step {step_id}: SLA and escalation apply to task/decision steps only")
        if errors:
            return errors

        edges: Dict[str, Set[str]] = {
            step_id: step.targets | ({step.escalation} if step.escalation else set())
            for step_id, step in self.steps.items()
        }
        reachable = _closure(starts[0], edges)
        for step_id in self.steps:
            if step_id not in reachable:
                errors.append(f"Step {step_id} is unreachable from the start step")

        reverse: Dict[str, Set[str]] = {step_id: set() for step_id in self.steps}
        for source, targets in edges.items():
            for target in targets:
                reverse[target].add(source)
        can_finish: Set[str] = set()
        for end in (s.id for s in self.steps.values() if s.type is StepType.END):
            can_finish |= _closure(end, reverse)
        for step_id in self.steps:
            if step_id not in can_finish:
                errors.append(f"Step {step_id} cannot reach an end step")
        return errors


def _closure(origin: str, edges: Dict[str, Set[str]]) -> Set[str]:
    seen = {origin}
    queue = deque([origin])
    while queue:
        for target in edges.get(queue.popleft(), ()):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class HistoryEntry(BaseModel):
    step_id: str
    entered_at: datetime
    exited_at: Optional[datetime] = None
    outcome: Optional[str] = None
    actor: Optional[str] = None


class WorkflowInstance(BaseModel):
    """Persisted state of one running workflow."""

    id: str = Field(default_factory=lambda: f"wf-{uuid.uuid4()}")
    template_id: str
    current_step: str
    status: InstanceStatus = InstanceStatus.ACTIVE
    history: List[HistoryEntry] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    overdue: bool = False
    revision: int = 0
    cancel_reason: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return self.status is not InstanceStatus.ACTIVE

    @property
    def current_entry(self) -> Optional[HistoryEntry]:
        return self.history[-1] if self.history else None

    @property
    def visited(self) -> List[str]:
        return [entry.step_id for entry in self.history]

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SweepReport(BaseModel):
    """Instances touched by one SLA sweep."""

    escalated: List[str] = Field(default_factory=list)
    overdue: List[str] = Field(default_factory=list)


class Transition(BaseModel):
    """An edge out of a step; ``outcome`` is ``None`` for the unconditional one."""

    outcome: Optional[str] = None
    target: str


class WorkflowStatistics(BaseModel):
    """Instance counts for one template."""

    template_id: str
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_step: Dict[str, int] = Field(default_factory=dict)
