"""Error taxonomy for the modweave orchestration layer.

Every error carries a stable ``code`` and a ``details`` mapping so callers can
hand a structured value back to a module instead of an opaque message.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ModweaveError(Exception):
    """Base class for all orchestration errors."""

    code = "modweave_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Return the error as a JSON-friendly mapping."""
        return {"error": self.code, "message": self.message, **self.details}


# ----------------------------------------------------------------------
# Registration
class RegistrationError(ModweaveError):
    code = "registration_error"


class DuplicateName(RegistrationError):
    code = "duplicate_name"


class DependencyUnmet(RegistrationError):
    code = "dependency_unmet"


class ModuleNotFound(RegistrationError):
    code = "module_not_found"


# ----------------------------------------------------------------------
# Delivery
class DeliveryError(ModweaveError):
    code = "delivery_error"
    permanent = True


class TargetNotRegistered(DeliveryError):
    code = "target_not_registered"


class DependencyNotSatisfied(DeliveryError):
    code = "dependency_not_satisfied"


class TransientDeliveryError(DeliveryError):
    """Raised by a module handler when it is temporarily unable to accept work."""

    code = "transient"
    permanent = False


ModuleUnavailable = TransientDeliveryError


class DeliveryTimeout(DeliveryError):
    code = "delivery_timeout"
    permanent = False


class DeliveryFailed(DeliveryError):
    code = "delivery_failed"


class BusStopped(DeliveryError):
    """The bus was stopped; nothing was queued."""

    code = "bus_stopped"
    permanent = False


class UnknownMessageType(DeliveryError):
    code = "unknown_message_type"


# ----------------------------------------------------------------------
# Shared models
class ValidationError(ModweaveError):
    code = "validation_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None, **details: Any) -> None:
        super().__init__(message, errors=list(errors or []), **details)
        self.errors: List[str] = list(errors or [])


class ModelNotFound(ModweaveError):
    code = "model_not_found"


class RecordNotFound(ModweaveError):
    code = "record_not_found"


class ConflictError(ModweaveError):
    """Stale version or failed guarded write."""

    code = "conflict"


# ----------------------------------------------------------------------
# Workflows
class WorkflowError(ModweaveError):
    code = "workflow_error"


class InvalidTransition(WorkflowError):
    code = "invalid_transition"


class InstanceTerminated(WorkflowError):
    code = "instance_terminated"


class StepTimeout(WorkflowError):
    code = "step_timeout"


class StepFailed(WorkflowError):
    code = "step_failed"


class TemplateInvalid(WorkflowError):
    code = "template_invalid"

    def __init__(self, message: str, errors: Optional[List[str]] = None, **details: Any) -> None:
        super().__init__(message, errors=list(errors or []), **details)
        self.errors: List[str] = list(errors or [])


class TemplateNotFound(WorkflowError):
    code = "template_not_found"


class InstanceNotFound(WorkflowError):
    code = "instance_not_found"


# ----------------------------------------------------------------------
# Migrations
class MigrationError(ModweaveError):
    code = "migration_error"


class NoPathFound(MigrationError):
    code = "no_path_found"


class UnitFailed(MigrationError):
    code = "unit_failed"

    def __init__(self, message: str, run: Any = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.run = run


class RollbackIncomplete(MigrationError):
    code = "rollback_incomplete"

    def __init__(self, message: str, run: Any = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.run = run
