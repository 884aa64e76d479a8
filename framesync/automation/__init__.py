"""Rule evaluation, simulation, authorization and execution of financial actions."""

from .collaborators import (
    ActionCommitter,
    InMemoryAccountBook,
    PermissionProvider,
    SnapshotProvider,
    StaticPermissionProvider,
    UserContext,
)
from .dispatcher import TriggerDispatcher
from .execution_controller import DRY_RUN_REASON, ExecutionController
from .execution_log import ExecutionLog, StepOutcome, find_lifecycle_violations
from .models import (
    Account,
    Action,
    ActionType,
    ExecutionRecord,
    ExecutionStatus,
    FinancialSnapshot,
    Goal,
    QueuedAction,
    SimulationOutcome,
)
from .permissions import PermissionDecision, PermissionEnforcer
from .rule_engine import ActionTemplate, Rule, RuleEngine, evaluate_rules, load_rules, parse_rules
from .simulation import SimulationService
from .triggers import TriggerHistory, TriggerRecord, trigger_key

__all__ = [
    "Account",
    "Action",
    "ActionCommitter",
    "ActionTemplate",
    "ActionType",
    "DRY_RUN_REASON",
    "ExecutionController",
    "ExecutionLog",
    "ExecutionRecord",
    "ExecutionStatus",
    "FinancialSnapshot",
    "Goal",
    "InMemoryAccountBook",
    "PermissionDecision",
    "PermissionEnforcer",
    "PermissionProvider",
    "QueuedAction",
    "Rule",
    "RuleEngine",
    "SimulationOutcome",
    "SimulationService",
    "SnapshotProvider",
    "StaticPermissionProvider",
    "StepOutcome",
    "TriggerDispatcher",
    "TriggerHistory",
    "TriggerRecord",
    "UserContext",
    "evaluate_rules",
    "find_lifecycle_violations",
    "load_rules",
    "parse_rules",
    "trigger_key",
]
