"""Policy-aware generation runner: tier fallback, retries, heuristic route, telemetry."""

from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable
import json
import logging
import uuid

from .policy import (
    TaskPolicy,
    default_policy_for_task,
    resolve_fallback_chain,
    trim_context_to_budget,
)
from .providers import (
    ProviderExecutionError,
    ProviderExecutionResult,
    ProviderUnavailableError,
    execute_tier_model,
)


logger = logging.getLogger("lantern_core.llm")

PolicyLookup = Callable[[str], TaskPolicy]
LogSink = Callable[[dict[str, Any]], None]
HeuristicFn = Callable[[dict[str, Any]], dict[str, Any]]
ProviderInvoker = Callable[..., ProviderExecutionResult]


@dataclass(frozen=True)
class TaskExecutionResult:
    task_name: str
    route: str
    used_tier: str
    output: dict[str, Any]
    prompt_tokens: int
    completion_tokens: int
    latency_ms: int
    context_trimmed: bool
    policy: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "route": self.route,
            "used_tier": self.used_tier,
            "output": self.output,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": self.latency_ms,
            "context_trimmed": self.context_trimmed,
            "policy": self.policy,
        }


def _estimate_output_tokens(output: dict[str, Any]) -> int:
    return max(1, len(json.dumps(output, separators=(",", ":"))) // 4)


class PolicyTaskRunner:
    """Runs generation tasks under explicit policy constraints.

    Tiers are tried in fallback order. ``ProviderUnavailableError`` skips the
    rest of a tier immediately, ``ProviderExecutionError`` consumes one retry.
    When every tier is exhausted the caller's heuristic produces the output, so
    ``run`` always returns a result.
    """

    def __init__(
        self,
        *,
        policy_lookup: PolicyLookup | None = None,
        log_sink: LogSink | None = None,
        provider_invoker: ProviderInvoker | None = None,
    ) -> None:
        self._policy_lookup = policy_lookup or default_policy_for_task
        self._log_sink = log_sink
        self._provider_invoker = provider_invoker or execute_tier_model

    def run(
        self,
        *,
        task_name: str,
        scope: str | None,
        subject_id: str | None,
        context: dict[str, Any],
        heuristic_fn: HeuristicFn,
    ) -> TaskExecutionResult:
        policy = self._policy_lookup(task_name)
        if not isinstance(policy, TaskPolicy):
            policy = default_policy_for_task(task_name)

        context_text = json.dumps(context, sort_keys=True, separators=(",", ":"), default=str)
        bounded_context, trimmed, prompt_tokens = trim_context_to_budget(
            context_text,
            policy.max_input_tokens,
        )
        for tier in resolve_fallback_chain(policy.model_tier):
            if tier == "heuristic":
                break
            for _ in range(max(1, policy.retry_limit + 1)):
                start = perf_counter()
                try:
                    provider_result = self._provider_invoker(
                        tier=tier,
                        task_name=task_name,
                        bounded_context_text=bounded_context,
                        temperature=policy.temperature,
                        max_output_tokens=policy.max_output_tokens,
                        timeout_ms=policy.timeout_ms,
                    )
                except ProviderUnavailableError as exc:
                    self._log_failure(scope, subject_id, task_name, exc.model_name or f"{tier}:provider", prompt_tokens, start, exc.error_code)
                    break
                except ProviderExecutionError as exc:
                    self._log_failure(scope, subject_id, task_name, exc.model_name or f"{tier}:provider", prompt_tokens, start, exc.error_code)
                    continue
                except Exception as exc:
                    logger.warning("[LLM] %s provider raised %s on tier %s", task_name, exc.__class__.__name__, tier)
                    self._log_failure(
                        scope,
                        subject_id,
                        task_name,
                        f"{tier}:provider",
                        prompt_tokens,
                        start,
                        f"provider_exception:{exc.__class__.__name__}",
                    )
                    continue

                latency_ms = int((perf_counter() - start) * 1000)
                completion_tokens = int(
                    provider_result.completion_tokens
                    if provider_result.completion_tokens is not None
                    else _estimate_output_tokens(provider_result.output)
                )
                result = TaskExecutionResult(
                    task_name=task_name,
                    route="provider",
                    used_tier=tier,
                    output=dict(provider_result.output),
                    prompt_tokens=int(provider_result.prompt_tokens or prompt_tokens),
                    completion_tokens=completion_tokens,
                    latency_ms=latency_ms,
                    context_trimmed=trimmed,
                    policy=policy.as_dict(),
                )
                self._emit_log(
                    scope=scope,
                    subject_id=subject_id,
                    task_name=task_name,
                    model_name=provider_result.model_name,
                    prompt_tokens=result.prompt_tokens,
                    completion_tokens=completion_tokens,
                    latency_ms=latency_ms,
                    success=True,
                    error_code=None,
                )
                return result

        start = perf_counter()
        output = heuristic_fn(context)
        latency_ms = int((perf_counter() - start) * 1000)
        completion_tokens = _estimate_output_tokens(output)
        self._emit_log(
            scope=scope,
            subject_id=subject_id,
            task_name=task_name,
            model_name="heuristic:local",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            success=True,
            error_code=None,
        )
        return TaskExecutionResult(
            task_name=task_name,
            route="heuristic",
            used_tier="heuristic",
            output=output,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            context_trimmed=trimmed,
            policy=policy.as_dict(),
        )

    def _log_failure(
        self,
        scope: str | None,
        subject_id: str | None,
        task_name: str,
        model_name: str,
        prompt_tokens: int,
        start: float,
        error_code: str,
    ) -> None:
        self._emit_log(
            scope=scope,
            subject_id=subject_id,
            task_name=task_name,
            model_name=model_name,
            prompt_tokens=prompt_tokens,
            completion_tokens=0,
            latency_ms=int((perf_counter() - start) * 1000),
            success=False,
            error_code=error_code,
        )

    def _emit_log(
        self,
        *,
        scope: str | None,
        subject_id: str | None,
        task_name: str,
        model_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        success: bool,
        error_code: str | None,
    ) -> None:
        if not self._log_sink:
            return
        self._log_sink(
            {
                "id": str(uuid.uuid4()),
                "scope": scope,
                "subject_id": subject_id,
                "task_name": task_name,
                "model_name": model_name,
                "prompt_tokens": int(prompt_tokens),
                "completion_tokens": int(completion_tokens),
                "latency_ms": int(latency_ms),
                "success": bool(success),
                "error_code": error_code,
            }
        )
