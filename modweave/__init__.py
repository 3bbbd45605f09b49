"""modweave: orchestration layer for modular platforms."""

from .bus import MessageBus
from .catalog import CatalogEntry, ModuleCatalog
from .config import ModweaveConfig, load_config
from .contracts import BroadcastResult, DeliveryReceipt, Message, MessageStatus, Priority
from .migrations import ChangeUnit, MigrationManager
from .module import DomainModule, handles
from .orchestrator import Orchestrator
from .persistence import get_store
from .registry import ModuleDescriptor, ModuleRegistry
from .shared import SharedModelRegistry
from .transports import get_transport
from .workflow import Step, StepType, WorkflowEngine, WorkflowTemplate

__version__ = "0.1.0"
__all__ = [
    "BroadcastResult",
    "CatalogEntry",
    "ChangeUnit",
    "DeliveryReceipt",
    "DomainModule",
    "Message",
    "MessageBus",
    "MessageStatus",
    "MigrationManager",
    "ModuleCatalog",
    "ModuleDescriptor",
    "ModuleRegistry",
    "ModweaveConfig",
    "Orchestrator",
    "Priority",
    "SharedModelRegistry",
    "Step",
    "StepType",
    "WorkflowEngine",
    "WorkflowTemplate",
    "get_store",
    "get_transport",
    "handles",
    "load_config",
]
