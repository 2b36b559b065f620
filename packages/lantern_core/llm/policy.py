"""Generation task policies for the town's line generator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any


ALLOWED_MODEL_TIERS = ("strong", "fast", "cheap", "heuristic")
FALLBACK_CHAIN_BY_TIER: dict[str, tuple[str, ...]] = {
    "strong": ("strong", "fast", "cheap", "heuristic"),
    "fast": ("fast", "cheap", "heuristic"),
    "cheap": ("cheap", "heuristic"),
    "heuristic": ("heuristic",),
}


@dataclass(frozen=True)
class TaskPolicy:
    task_name: str
    model_tier: str
    max_input_tokens: int
    max_output_tokens: int
    temperature: float
    timeout_ms: int
    retry_limit: int
    enable_prompt_cache: bool = True

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["fallback_chain"] = list(resolve_fallback_chain(self.model_tier))
        return out


DEFAULT_TASK_POLICIES: dict[str, TaskPolicy] = {
    "npc_line": TaskPolicy(
        task_name="npc_line",
        model_tier="fast",
        max_input_tokens=1800,
        max_output_tokens=160,
        temperature=0.7,
        timeout_ms=4500,
        retry_limit=1,
    ),
    "relationship_shift": TaskPolicy(
        task_name="relationship_shift",
        model_tier="cheap",
        max_input_tokens=600,
        max_output_tokens=64,
        temperature=0.1,
        timeout_ms=1800,
        retry_limit=1,
    ),
    "memory_classification": TaskPolicy(
        task_name="memory_classification",
        model_tier="cheap",
        max_input_tokens=400,
        max_output_tokens=48,
        temperature=0.0,
        timeout_ms=1400,
        retry_limit=1,
    ),
    "followup_hint": TaskPolicy(
        task_name="followup_hint",
        model_tier="cheap",
        max_input_tokens=900,
        max_output_tokens=80,
        temperature=0.3,
        timeout_ms=2200,
        retry_limit=1,
    ),
    "dynamic_mission": TaskPolicy(
        task_name="dynamic_mission",
        model_tier="fast",
        max_input_tokens=2000,
        max_output_tokens=260,
        temperature=0.5,
        timeout_ms=5000,
        retry_limit=1,
    ),
    "town_mission": TaskPolicy(
        task_name="town_mission",
        model_tier="fast",
        max_input_tokens=1800,
        max_output_tokens=240,
        temperature=0.5,
        timeout_ms=5000,
        retry_limit=1,
    ),
    "story_arc": TaskPolicy(
        task_name="story_arc",
        model_tier="strong",
        max_input_tokens=2400,
        max_output_tokens=420,
        temperature=0.6,
        timeout_ms=7500,
        retry_limit=2,
    ),
    "economy_plan": TaskPolicy(
        task_name="economy_plan",
        model_tier="cheap",
        max_input_tokens=1200,
        max_output_tokens=200,
        temperature=0.2,
        timeout_ms=3000,
        retry_limit=1,
    ),
    "world_events": TaskPolicy(
        task_name="world_events",
        model_tier="fast",
        max_input_tokens=1600,
        max_output_tokens=320,
        temperature=0.6,
        timeout_ms=4500,
        retry_limit=1,
    ),
    "faction_pulse": TaskPolicy(
        task_name="faction_pulse",
        model_tier="cheap",
        max_input_tokens=1400,
        max_output_tokens=240,
        temperature=0.3,
        timeout_ms=3200,
        retry_limit=1,
    ),
    "routine_nudges": TaskPolicy(
        task_name="routine_nudges",
        model_tier="cheap",
        max_input_tokens=1200,
        max_output_tokens=240,
        temperature=0.3,
        timeout_ms=3000,
        retry_limit=1,
    ),
}


def normalize_model_tier(value: str) -> str:
    tier = str(value or "").strip().lower()
    if tier not in ALLOWED_MODEL_TIERS:
        raise ValueError(f"Unsupported model tier: {value}")
    return tier


def resolve_fallback_chain(model_tier: str) -> tuple[str, ...]:
    tier = normalize_model_tier(model_tier)
    return FALLBACK_CHAIN_BY_TIER[tier]


def default_policy_for_task(task_name: str) -> TaskPolicy:
    key = str(task_name).strip()
    if key in DEFAULT_TASK_POLICIES:
        return DEFAULT_TASK_POLICIES[key]
    return TaskPolicy(
        task_name=key or "unknown_task",
        model_tier="cheap",
        max_input_tokens=900,
        max_output_tokens=160,
        temperature=0.2,
        timeout_ms=2500,
        retry_limit=1,
    )


def normalize_policy_row(task_name: str, row: dict[str, Any]) -> TaskPolicy:
    return TaskPolicy(
        task_name=task_name,
        model_tier=normalize_model_tier(str(row.get("model_tier") or "cheap")),
        max_input_tokens=max(1, int(row.get("max_input_tokens") or 1)),
        max_output_tokens=max(1, int(row.get("max_output_tokens") or 1)),
        temperature=float(row.get("temperature") if row.get("temperature") is not None else 0.2),
        timeout_ms=max(100, int(row.get("timeout_ms") or 100)),
        retry_limit=max(0, int(row.get("retry_limit") or 0)),
        enable_prompt_cache=bool(row.get("enable_prompt_cache", True)),
    )


def low_cost_preset_policies() -> list[TaskPolicy]:
    # Cheap tier everywhere with tighter budgets.
    out: list[TaskPolicy] = []
    for key in sorted(DEFAULT_TASK_POLICIES):
        policy = DEFAULT_TASK_POLICIES[key]
        out.append(
            replace(
                policy,
                model_tier="cheap",
                max_input_tokens=min(policy.max_input_tokens, 800),
                max_output_tokens=min(policy.max_output_tokens, 160),
                timeout_ms=min(policy.timeout_ms, 2500),
            )
        )
    return out


def offline_preset_policies() -> list[TaskPolicy]:
    return [replace(DEFAULT_TASK_POLICIES[k], model_tier="heuristic") for k in sorted(DEFAULT_TASK_POLICIES)]


def situational_default_preset_policies() -> list[TaskPolicy]:
    return [DEFAULT_TASK_POLICIES[k] for k in sorted(DEFAULT_TASK_POLICIES.keys())]


POLICY_PRESETS = {
    "situational_default": situational_default_preset_policies,
    "low_cost": low_cost_preset_policies,
    "offline": offline_preset_policies,
}


def estimate_token_count(text: str) -> int:
    return max(1, len(text) // 4)


def trim_context_to_budget(context_text: str, max_input_tokens: int) -> tuple[str, bool, int]:
    estimated = estimate_token_count(context_text)
    if estimated <= max_input_tokens:
        return context_text, False, estimated

    max_chars = max(32, int(max_input_tokens * 4))
    trimmed = context_text[-max_chars:]
    return trimmed, True, estimate_token_count(trimmed)
