"""Cross-module workflow engine with SLA escalation."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..config import WorkflowConfig
from ..errors import (
    ConflictError,
    DeliveryError,
    DeliveryTimeout,
    InstanceNotFound,
    InstanceTerminated,
    InvalidTransition,
    StepFailed,
    StepTimeout,
    TemplateInvalid,
    TemplateNotFound,
)
from ..persistence import Store
from ..utils.clock import Clock, utcnow
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

if TYPE_CHECKING:
    from ..bus import MessageBus

logger = logging.getLogger(__name__)

SLA_BREACH = "sla_breach"
SLA_ACTOR = "system:sla"


class WorkflowEngine:
    """Drives workflow instances along their template graphs.

    Every instance write is guarded on the instance ``revision`` (and on the
    instance still being active at the same step), so a step execution and
    an SLA escalation racing on the same instance cannot both win.
    """

    TEMPLATES = "workflow_templates"
    INSTANCES = "workflow_instances"

    def __init__(
        self,
        store: Store,
        bus: Optional["MessageBus"] = None,
        config: Optional[WorkflowConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._bus = bus
        self.config = config or WorkflowConfig()
        self._clock = clock
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Templates
    async def register_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Validate the template graph once and store it."""
        errors = template.graph_errors()
        if errors:
            raise TemplateInvalid(
                f"Workflow template {template.id} is invalid",
                errors=errors,
                template_id=template.id,
            )
        for step in template.steps.values():
            if bool(step.module) != bool(step.action):
                raise TemplateInvalid(
                    f"Workflow template {template.id} is invalid",
                    errors=[f"Step {step.id} must declare both module and action"],
                    template_id=template.id,
                )
        try:
            await self._store.insert(self.TEMPLATES, template.id, template.model_dump(mode="json"))
        except ConflictError as exc:
            raise TemplateInvalid(
                f"Workflow template {template.id} is already registered",
                errors=["duplicate template id"],
                template_id=template.id,
            ) from exc
        self._templates[template.id] = template
        logger.info(f"Registered workflow template {template.id} ({len(template.steps)} steps)")
        return template

    async def get_template(self, template_id: str) -> WorkflowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            doc = await self._store.get(self.TEMPLATES, template_id)
            if doc is None:
                raise TemplateNotFound(
                    f"Workflow template {template_id} not found", template_id=template_id
                )
            template = self._templates[template_id] = WorkflowTemplate.model_validate(doc)
        return template

    async def list_templates(self) -> List[WorkflowTemplate]:
        return [WorkflowTemplate.model_validate(d) for d in await self._store.select(self.TEMPLATES)]

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(
        self,
        template_id: str,
        initial_data: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> WorkflowInstance:
        template = await self.get_template(template_id)
        start = template.start_step
        instance = WorkflowInstance(
            template_id=template_id,
            current_step=start.id,
            data=dict(initial_data or {}),
            history=[HistoryEntry(step_id=start.id, entered_at=self._clock(), actor=actor)],
            created_at=self._clock(),
        )
        await self._store.insert(self.INSTANCES, instance.id, instance.to_document())
        logger.info(f"Created workflow instance {instance.id} of {template_id} at {start.id}")
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        doc = await self._store.get(self.INSTANCES, instance_id)
        if doc is None:
            raise InstanceNotFound(
                f"Workflow instance {instance_id} not found", instance_id=instance_id
            )
        return WorkflowInstance.model_validate(doc)

    async def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        template_id: Optional[str] = None,
    ) -> List[WorkflowInstance]:
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = status.value
        if template_id is not None:
            filters["template_id"] = template_id
        docs = await self._store.select(self.INSTANCES, **filters)
        return [WorkflowInstance.model_validate(d) for d in docs]

    async def tasks_for_role(self, role: str) -> List[WorkflowInstance]:
        """Active instances waiting at a step assigned to ``role``."""
        waiting = []
        for instance in await self.list_instances(status=InstanceStatus.ACTIVE):
            template = await self.get_template(instance.template_id)
            if template.steps[instance.current_step].assignee_role == role:
                waiting.append(instance)
        return waiting

    async def available_transitions(self, instance_id: str) -> List[Transition]:
        """Edges the instance may take from its current step.

        A finished instance has none. SLA escalation edges are not offered.
        """
        instance = await self.get_instance(instance_id)
        if instance.terminal:
            return []
        template = await self.get_template(instance.template_id)
        return template.steps[instance.current_step].outgoing()

    async def workflow_statistics(
        self, template_id: Optional[str] = None
    ) -> Dict[str, WorkflowStatistics]:
        """Instance counts per template, by status and by active step."""
        if template_id is not None:
            templates = [await self.get_template(template_id)]
        else:
            templates = await self.list_templates()
        stats = {t.id: WorkflowStatistics(template_id=t.id) for t in templates}
        for instance in await self.list_instances(template_id=template_id):
            entry = stats.setdefault(
                instance.template_id, WorkflowStatistics(template_id=instance.template_id)
            )
            entry.total += 1
            status = instance.status.value
            entry.by_status[status] = entry.by_status.get(status, 0) + 1
            if not instance.terminal:
                entry.by_step[instance.current_step] = entry.by_step.get(instance.current_step, 0) + 1
        return stats

    async def execute_step(
        self,
        instance_id: str,
        step_id: str,
        input: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> WorkflowInstance:
        """Complete ``step_id`` and move the instance along the matching edge.

        A step bound to a module is executed by calling that module over the
        bus; its reply (or the reply's ``"outcome"`` key) selects the edge.
        Unbound steps take the outcome from ``input["outcome"]``.

        Raises:
            InstanceTerminated: The instance is no longer active.
            InvalidTransition: ``step_id`` is not the current step, or no
                edge matches the outcome.
            StepTimeout: The owning module did not answer in time.
            StepFailed: The owning module rejected the step permanently.
        """
        input = dict(input or {})
        instance = await self.get_instance(instance_id)
        if instance.terminal:
            raise InstanceTerminated(
                f"Workflow instance {instance_id} is {instance.status.value}",
                instance_id=instance_id,
                status=instance.status.value,
            )
        if instance.current_step != step_id:
            raise InvalidTransition(
                f"Instance {instance_id} is at {instance.current_step}, not {step_id}",
                instance_id=instance_id,
                current_step=instance.current_step,
                requested_step=step_id,
            )

        template = await self.get_template(instance.template_id)
        step = template.steps[step_id]
        outcome, produced = await self._run_step(instance, step, input)

        target = step.resolve_next(outcome)
        if target is None:
            raise InvalidTransition(
                f"Step {step_id} has no transition for outcome {outcome!r}",
                instance_id=instance_id,
                step_id=step_id,
                outcome=outcome,
            )
        data = {**instance.data, **input.get("data", {}), **produced}
        advanced = self._advance(instance, template.steps[target], outcome, actor, data)
        advanced = await self._save(advanced, instance)
        logger.info(
            f"Instance {instance_id}: {step_id} -[{outcome}]-> {target}"
            + (" (completed)" if advanced.status is InstanceStatus.COMPLETED else "")
        )
        return advanced

    async def cancel_instance(
        self,
        instance_id: str,
        reason: str,
        actor: Optional[str] = None,
    ) -> WorkflowInstance:
        instance = await self.get_instance(instance_id)
        if instance.terminal:
            raise InstanceTerminated(
                f"Workflow instance {instance_id} is {instance.status.value}",
                instance_id=instance_id,
                status=instance.status.value,
            )
        history = [entry.model_copy() for entry in instance.history]
        if history and history[-1].exited_at is None:
            history[-1].exited_at = self._clock()
            history[-1].outcome = "cancelled"
            history[-1].actor = actor
        cancelled = instance.model_copy(
            update={
                "status": InstanceStatus.CANCELLED,
                "history": history,
                "cancel_reason": reason,
            }
        )
        cancelled = await self._save(cancelled, instance)
        logger.info(f"Cancelled workflow instance {instance_id}: {reason}")
        return cancelled

    # ------------------------------------------------------------------
    # SLA
    async def sweep_sla(self, now: Optional[datetime] = None) -> SweepReport:
        """Escalate or flag active instances that outstayed their step SLA."""
        now = now or self._clock()
        report = SweepReport()
        for instance in await self.list_instances(status=InstanceStatus.ACTIVE):
            template = await self.get_template(instance.template_id)
            step = template.steps[instance.current_step]
            entry = instance.current_entry
            if step.sla is None or entry is None or now - entry.entered_at <= step.sla:
                continue

            if step.escalation:
                escalated = self._advance(
                    instance,
                    template.steps[step.escalation],
                    SLA_BREACH,
                    SLA_ACTOR,
                    instance.data,
                    now=now,
                )
                try:
                    await self._save(escalated, instance)
                except (InvalidTransition, InstanceTerminated):
                    logger.debug(f"Instance {instance.id} claimed elsewhere, skipping")
                    continue
                report.escalated.append(instance.id)
                logger.warning(
                    f"Instance {instance.id} breached SLA at {step.id}, escalated to {step.escalation}"
                )
            elif not instance.overdue:
                try:
                    await self._save(instance.model_copy(update={"overdue": True}), instance)
                except (InvalidTransition, InstanceTerminated):
                    continue
                report.overdue.append(instance.id)
                logger.warning(
                    f"Instance {instance.id} breached SLA at {step.id}; flagged overdue"
                )
        return report

    async def start(self) -> None:
        """Run the SLA sweep every ``sla_sweep_interval`` seconds."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="sla-sweep")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.sweep_sla()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("SLA sweep failed")
            await asyncio.sleep(self.config.sla_sweep_interval)

    # ------------------------------------------------------------------
    # Internals
    async def _run_step(
        self, instance: WorkflowInstance, step: Step, input: Dict[str, Any]
    ) -> tuple[Any, Dict[str, Any]]:
        """Return the step outcome and any data the owning module produced."""
        if not step.bound:
            return input.get("outcome"), {}
        if self._bus is None:
            raise StepFailed(
                f"Step {step.id} is bound to {step.module} but no message bus is configured",
                instance_id=instance.id,
                step_id=step.id,
            )

        payload = {
            "instance_id": instance.id,
            "template_id": instance.template_id,
            "step_id": step.id,
            "data": instance.data,
            "input": input,
        }
        try:
            result = await self._bus.call(
                step.module,
                step.action,
                payload,
                timeout=self.config.step_timeout,
                correlation_id=instance.id,
            )
        except DeliveryTimeout as exc:
            await self._mark(instance, last_error="step_timeout")
            raise StepTimeout(
                f"{step.module} did not complete {step.id} within {self.config.step_timeout}s",
                instance_id=instance.id,
                step_id=step.id,
                message_id=exc.details.get("message_id"),
            ) from exc
        except DeliveryError as exc:
            await self._mark(instance, status=InstanceStatus.FAILED, last_error=exc.message)
            raise StepFailed(
                f"{step.module} failed step {step.id}: {exc.message}",
                instance_id=instance.id,
                step_id=step.id,
                cause=exc.to_dict(),
            ) from exc

        if isinstance(result, dict):
            return result.get("outcome"), dict(result.get("data") or {})
        return result, {}

    def _advance(
        self,
        instance: WorkflowInstance,
        target: Step,
        outcome: Any,
        actor: Optional[str],
        data: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> WorkflowInstance:
        now = now or self._clock()
        history = [entry.model_copy() for entry in instance.history]
        if history and history[-1].exited_at is None:
            history[-1].exited_at = now
            history[-1].outcome = None if outcome is None else str(outcome)
            history[-1].actor = actor
        entry = HistoryEntry(step_id=target.id, entered_at=now)
        status = InstanceStatus.ACTIVE
        if target.type is StepType.END:
            entry.exited_at = now
            status = InstanceStatus.COMPLETED
        history.append(entry)
        return instance.model_copy(
            update={
                "current_step": target.id,
                "status": status,
                "history": history,
                "data": data,
                "overdue": False,
                "last_error": None,
            }
        )

    async def _mark(self, instance: WorkflowInstance, **changes: Any) -> None:
        try:
            await self._save(instance.model_copy(update=changes), instance)
        except (InvalidTransition, InstanceTerminated):
            logger.debug(f"Instance {instance.id} moved on before {changes} was recorded")

    async def _save(
        self, updated: WorkflowInstance, previous: WorkflowInstance
    ) -> WorkflowInstance:
        """Persist ``updated`` only if the stored instance still equals ``previous``."""
        updated = updated.model_copy(
            update={"revision": previous.revision + 1, "updated_at": self._clock()}
        )
        rows = await self._store.update(
            self.INSTANCES,
            updated.id,
            updated.to_document(),
            expected={
                "revision": previous.revision,
                "status": InstanceStatus.ACTIVE.value,
                "current_step": previous.current_step,
            },
        )
        if rows:
            return updated
        current = await self.get_instance(updated.id)
        if current.terminal:
            raise InstanceTerminated(
                f"Workflow instance {updated.id} is {current.status.value}",
                instance_id=updated.id,
                status=current.status.value,
            )
        raise InvalidTransition(
            f"Workflow instance {updated.id} changed concurrently",
            instance_id=updated.id,
            current_step=current.current_step,
        )
