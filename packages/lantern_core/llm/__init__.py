"""Generation control plane for the town's line generator."""

from .gate import CooldownGate, TtlCache
from .policy import (
    ALLOWED_MODEL_TIERS,
    DEFAULT_TASK_POLICIES,
    POLICY_PRESETS,
    TaskPolicy,
    default_policy_for_task,
    normalize_policy_row,
    resolve_fallback_chain,
)
from .providers import configured_tiers, execute_tier_model
from .task_runner import PolicyTaskRunner, TaskExecutionResult

__all__ = [
    "ALLOWED_MODEL_TIERS",
    "DEFAULT_TASK_POLICIES",
    "POLICY_PRESETS",
    "CooldownGate",
    "PolicyTaskRunner",
    "TaskExecutionResult",
    "TaskPolicy",
    "TtlCache",
    "configured_tiers",
    "default_policy_for_task",
    "execute_tier_model",
    "normalize_policy_row",
    "resolve_fallback_chain",
]
