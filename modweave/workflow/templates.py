"""Stock cross-module workflow templates."""

from __future__ import annotations

from datetime import timedelta

from .models import Step, StepType, WorkflowTemplate


def permit_application_template() -> WorkflowTemplate:
    """Permit application handled across building consents, finance and inspections."""
    return WorkflowTemplate(
        id="permit_application_process",
        name="Permit Application Process",
        description="Cross-module workflow for permit applications",
        trigger_module="BuildingConsents",
        steps=[
            Step(
                id="application_submitted",
                type=StepType.START,
                module="BuildingConsents",
                action="validate_application",
                transitions={"valid": "payment_required", "invalid": "rejected"},
            ),
            Step(
                id="payment_required",
                module="FinancialManagement",
                action="create_invoice",
                next="payment_completed",
            ),
            Step(
                id="payment_completed",
                module="FinancialManagement",
                action="process_payment",
                transitions={"paid": "inspection_scheduled", "declined": "rejected"},
                sla=timedelta(days=30),
            ),
            Step(
                id="inspection_scheduled",
                module="InspectionsManagement",
                action="schedule_inspection",
                next="inspection_completed",
                assignee_role="inspector",
                sla=timedelta(days=10),
                escalation="inspection_review",
            ),
            Step(
                id="inspection_review",
                type=StepType.DECISION,
                assignee_role="inspections_supervisor",
                next="inspection_completed",
            ),
            Step(
                id="inspection_completed",
                module="InspectionsManagement",
                action="complete_inspection",
                transitions={"passed": "permit_issued", "failed": "rejected"},
            ),
            Step(
                id="permit_issued",
                module="BuildingConsents",
                action="issue_permit",
                next="issued",
            ),
            Step(id="issued", type=StepType.END),
            Step(id="rejected", type=StepType.END),
        ],
    )
