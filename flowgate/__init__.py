"""flowgate: graph workflow execution with human approval gates."""

from .contracts import TriggerMessage
from .db import get_definition_store
from .editor import History
from .engine import WorkflowEngine, build_engine
from .models import Edge, Step, StepType, TriggerType, WorkflowDefinition
from .persistence import get_repository
from .transports import get_transport
from .triggers import TriggerDispatcher
from .validation import validate_connection, validate_workflow
from .worker import ExecutionWorker

__version__ = "0.1.0"
__all__ = [
    "Edge",
    "ExecutionWorker",
    "History",
    "Step",
    "StepType",
    "TriggerDispatcher",
    "TriggerMessage",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowEngine",
    "build_engine",
    "get_definition_store",
    "get_repository",
    "get_transport",
    "validate_connection",
    "validate_workflow",
]
