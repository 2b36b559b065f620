"""Provider adapter for tiered line generation.

Speaks the OpenAI-compatible Chat Completions contract over ``urllib`` so any
vendor exposing that API can back a tier. Configuration is read from the
environment on every call so tests and operators can flip tiers at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib import error, request
import json
import os

from .policy import estimate_token_count


DEFAULT_OPENAI_COMPATIBLE_BASE_URL = "https://api.openai.com/v1"
PROVIDER = "openai_compatible"
TIERS = ("strong", "fast", "cheap")

OUTPUT_CONTRACTS: dict[str, str] = {
    "npc_line": '{"line": str (one short spoken line), "emotion": str, "memory_note": str}',
    "relationship_shift": '{"delta": int in -2..2, "rationale": str}',
    "memory_classification": '{"category": "promise"|"apology"|"request"|"none", "resolved": bool}',
    "followup_hint": '{"hint": str (one sentence the npc may bring up today)}',
    "dynamic_mission": (
        '{"title": str, "description": str, "objective_type": "talk_npc"|"talk_role"|"visit_area"|'
        '"harvest_count"|"visit_unique_areas"|"talk_unique_npcs", "target_npc_name": str, '
        '"target_role": str, "target_area": str, "target_count": int, "urgency": 1..3, "why_now": str}'
    ),
    "town_mission": (
        '{"title": str, "description": str, "objective_type": "visit_area"|"talk_to_any_npc"|'
        '"talk_to_role"|"harvest_any", "target_area": str, "target_role": str, "target_count": 1..4, '
        '"gossip": str}'
    ),
    "story_arc": '{"title": str, "stages": [3..5 str], "branches": [2 str]}',
    "economy_plan": (
        '{"prices": {crop: int}, "demand": {crop: "low"|"normal"|"high"}, '
        '"reward_multiplier": float 0.75..1.35, "note": str}'
    ),
    "world_events": (
        '{"events": [{"title": str, "description": str, "area": str, "severity": 1..2, '
        '"effect": "weather_shift"|"price_spike"|"guard_alert"|"none"}] (max 4)}'
    ),
    "faction_pulse": (
        '{"factions": [{"name": str, "influence": 20..80, "agenda": str}], '
        '"tensions": [{"a": str, "b": str, "value": 0..100}]}'
    ),
    "routine_nudges": '{"nudges": [{"role": str, "shift_minutes": -90..90, "venue": str, "note": str}]}',
}


def _tier_env(tier: str, key: str) -> str | None:
    """Tier-specific ``LANTERN_LLM_<TIER>_<KEY>`` first, then ``LANTERN_LLM_<KEY>``."""
    for name in (f"LANTERN_LLM_{tier.upper()}_{key}", f"LANTERN_LLM_{key}"):
        value = (os.environ.get(name) or "").strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class ProviderExecutionResult:
    output: dict[str, Any]
    model_name: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, model_name: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.model_name = model_name


class ProviderUnavailableError(ProviderError):
    pass


class ProviderExecutionError(ProviderError):
    pass


@dataclass(frozen=True)
class TierProviderConfig:
    tier: str
    model: str
    base_url: str
    api_key: str | None

    def model_name(self) -> str:
        return f"{PROVIDER}:{self.model}"


def tier_provider_config(tier: str) -> TierProviderConfig:
    tier_name = str(tier or "").strip().lower()
    if not tier_name:
        raise ProviderUnavailableError("Missing tier name", error_code="missing_tier")

    provider = (_tier_env(tier_name, "PROVIDER") or PROVIDER).lower()
    if provider != PROVIDER:
        raise ProviderUnavailableError(f"Unsupported provider: {provider}", error_code="unsupported_provider")

    model = _tier_env(tier_name, "MODEL")
    if not model:
        raise ProviderUnavailableError(f"No model configured for tier: {tier_name}", error_code="missing_model")

    api_key = _tier_env(tier_name, "API_KEY")
    allow_empty = (os.environ.get("LANTERN_LLM_ALLOW_EMPTY_API_KEY") or "").strip().lower() in {"1", "true", "yes", "on"}
    if not api_key and not allow_empty:
        raise ProviderUnavailableError(f"No API key configured for tier: {tier_name}", error_code="missing_api_key")

    base_url = _tier_env(tier_name, "BASE_URL") or DEFAULT_OPENAI_COMPATIBLE_BASE_URL
    return TierProviderConfig(tier=tier_name, model=model, base_url=base_url.rstrip("/"), api_key=api_key)


def configured_tiers() -> dict[str, str | None]:
    """Model name per tier, or None where the tier would fall through."""
    out: dict[str, str | None] = {}
    for tier in TIERS:
        try:
            out[tier] = tier_provider_config(tier).model_name()
        except ProviderUnavailableError:
            out[tier] = None
    return out


def _build_prompt(*, task_name: str, bounded_context_text: str) -> list[dict[str, str]]:
    system = (
        "You write for a small living town: its townsfolk, its gossip and its daily business. "
        "Return a strict JSON object only, without markdown or commentary."
    )
    contract = OUTPUT_CONTRACTS.get(task_name, "a JSON object")
    user = (
        f"Task: {task_name}\n"
        f"Output contract: {contract}\n"
        "Keep spoken lines under 14 words and stay in character.\n\n"
        "Context JSON:\n"
        f"{bounded_context_text}"
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> dict[str, Any]:
    """First JSON object in ``text``; models sometimes wrap it in prose."""
    candidate = str(text or "").strip()
    if not candidate:
        raise ProviderExecutionError("Empty model response", error_code="empty_response")

    start = candidate.find("{")
    while start != -1:
        try:
            parsed, _ = _DECODER.raw_decode(candidate, start)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        start = candidate.find("{", start + 1)

    raise ProviderExecutionError(
        "Response does not contain a valid JSON object",
        error_code="invalid_json_output",
    )


def _post_openai_compatible(
    *,
    config: TierProviderConfig,
    task_name: str,
    bounded_context_text: str,
    temperature: float,
    max_output_tokens: int,
    timeout_ms: int,
) -> ProviderExecutionResult:
    payload = {
        "model": config.model,
        "messages": _build_prompt(task_name=task_name, bounded_context_text=bounded_context_text),
        "temperature": float(temperature),
        "max_tokens": int(max_output_tokens),
    }
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    req = request.Request(
        f"{config.base_url}/chat/completions",
        method="POST",
        data=body,
        headers={"Content-Type": "application/json"},
    )
    if config.api_key:
        req.add_header("Authorization", f"Bearer {config.api_key}")

    timeout_s = max(0.2, float(timeout_ms) / 1000.0)
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except error.HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except OSError:
            detail = ""
        raise ProviderExecutionError(
            f"Provider HTTP error {exc.code}: {detail[:240]}",
            error_code=f"http_{exc.code}",
            model_name=config.model_name(),
        ) from exc
    except Exception as exc:
        raise ProviderExecutionError(
            f"Provider network error: {exc}",
            error_code="network_error",
            model_name=config.model_name(),
        ) from exc

    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ProviderExecutionError(
            "Provider returned non-JSON response",
            error_code="invalid_provider_response",
            model_name=config.model_name(),
        ) from exc

    choices = parsed.get("choices") or []
    if not choices:
        raise ProviderExecutionError(
            "Provider response missing choices",
            error_code="missing_choices",
            model_name=config.model_name(),
        )
    message = ((choices[0] or {}).get("message") or {}).get("content")
    output = extract_json_object(str(message or ""))

    usage = parsed.get("usage") or {}
    output_text = json.dumps(output, separators=(",", ":"))
    try:
        prompt = int(usage["prompt_tokens"])
    except (KeyError, TypeError, ValueError):
        prompt = estimate_token_count(bounded_context_text)
    try:
        completion = int(usage["completion_tokens"])
    except (KeyError, TypeError, ValueError):
        completion = estimate_token_count(output_text)

    return ProviderExecutionResult(
        output=output,
        model_name=str(parsed.get("model") or config.model_name()),
        prompt_tokens=prompt,
        completion_tokens=completion,
    )


def execute_tier_model(
    *,
    tier: str,
    task_name: str,
    bounded_context_text: str,
    temperature: float,
    max_output_tokens: int,
    timeout_ms: int,
) -> ProviderExecutionResult:
    """Execute a policy task against the configured provider for one tier."""
    config = tier_provider_config(tier)
    return _post_openai_compatible(
        config=config,
        task_name=task_name,
        bounded_context_text=bounded_context_text,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout_ms=timeout_ms,
    )
