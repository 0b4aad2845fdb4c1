"""vulnalert: alert rule engine and notification dispatch for vulnerability feeds."""

__version__ = "0.4.0"

from vulnalert.audit.logger import AuditError, AuditLogger, verify_log
from vulnalert.config import ConfigError, VulnAlertConfig, find_config, load_config
from vulnalert.cooldown.store import (
    CooldownStore,
    CooldownStoreError,
    InMemoryCooldownStore,
    SqliteCooldownStore,
)
from vulnalert.dispatch.coordinator import DispatchCoordinator
from vulnalert.engine.engine import RuleEngine
from vulnalert.engine.trigger import IngestionTrigger
from vulnalert.models import (
    AlertRule,
    ChannelAction,
    ChannelResult,
    ChannelType,
    Condition,
    ConditionField,
    ConditionOperator,
    DispatchIntent,
    DispatchOutcome,
    DispatchResult,
    OutcomeStatus,
    RuleState,
    Severity,
    Vulnerability,
)
from vulnalert.pipeline import AlertPipeline, PipelineError
from vulnalert.rules.evaluator import EvaluationResult, evaluate
from vulnalert.rules.store import RuleStoreError, SqliteRuleStore
from vulnalert.rules.validation import RuleValidationError

__all__ = [
    "AlertPipeline",
    "AlertRule",
    "AuditError",
    "AuditLogger",
    "ChannelAction",
    "ChannelResult",
    "ChannelType",
    "Condition",
    "ConditionField",
    "ConditionOperator",
    "ConfigError",
    "CooldownStore",
    "CooldownStoreError",
    "DispatchCoordinator",
    "DispatchIntent",
    "DispatchOutcome",
    "DispatchResult",
    "EvaluationResult",
    "find_config",
    "InMemoryCooldownStore",
    "IngestionTrigger",
    "load_config",
    "OutcomeStatus",
    "PipelineError",
    "RuleEngine",
    "RuleState",
    "RuleStoreError",
    "RuleValidationError",
    "Severity",
    "SqliteCooldownStore",
    "SqliteRuleStore",
    "VulnAlertConfig",
    "Vulnerability",
    "evaluate",
    "verify_log",
    "__version__",
]
