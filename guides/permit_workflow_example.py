"""Example running a building permit application across three modules."""

import asyncio
import logging

from modweave import DomainModule, Orchestrator, handles
from modweave.workflow import InstanceStatus, permit_application_template


class BuildingConsents(DomainModule):
    name = "BuildingConsents"
    version = "1.0"

    @handles("validate_application")
    async def validate_application(self, payload):
        valid = bool(payload["data"].get("site_address"))
        return {"outcome": "valid" if valid else "invalid"}

    @handles("issue_permit")
    async def issue_permit(self, payload):
        return {"outcome": "issued", "data": {"permit_number": f"BP-{payload['instance_id'][-6:]}"}}


class FinancialManagement(DomainModule):
    name = "FinancialManagement"
    version = "1.0"

    @handles("create_invoice")
    async def create_invoice(self, payload):
        return {"outcome": "invoiced", "data": {"invoice_amount": 450.0}}

    @handles("process_payment")
    async def process_payment(self, payload):
        return {"outcome": "paid"}


class InspectionsManagement(DomainModule):
    name = "InspectionsManagement"
    version = "1.0"

    @handles("schedule_inspection")
    async def schedule_inspection(self, payload):
        return {"outcome": "scheduled", "data": {"inspection_date": "2026-11-02"}}

    @handles("complete_inspection")
    async def complete_inspection(self, payload):
        return {"outcome": "passed"}


async def main():
    """Register the modules and drive one application to a permit."""
    async with Orchestrator.from_config() as orchestrator:
        for module in (BuildingConsents(), FinancialManagement(), InspectionsManagement()):
            await orchestrator.registry.register(module)

        template = await orchestrator.workflows.register_template(permit_application_template())
        instance = await orchestrator.workflows.create_instance(
            template.id, {"applicant": "USER_42", "site_address": "12 Harbour Rd"}
        )
        while instance.status is InstanceStatus.ACTIVE:
            instance = await orchestrator.workflows.execute_step(instance.id, instance.current_step)

        print(f"Instance {instance.id} finished at {instance.current_step}")
        print(f"Visited: {' -> '.join(instance.visited)}")
        print(f"Permit number: {instance.data.get('permit_number')}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
