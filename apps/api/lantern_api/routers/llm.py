"""Generation control-plane endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from packages.lantern_core.llm.policy import POLICY_PRESETS, normalize_policy_row

from ..storage.llm_control import get_policy, list_call_logs, list_policies, upsert_policy


router = APIRouter(prefix="/api/v1/llm", tags=["llm"])


class UpsertPolicyRequest(BaseModel):
    model_tier: str = Field(pattern="^(strong|fast|cheap|heuristic)$")
    max_input_tokens: int = Field(ge=1, le=200000)
    max_output_tokens: int = Field(ge=1, le=64000)
    temperature: float = Field(ge=0.0, le=2.0)
    timeout_ms: int = Field(ge=100, le=120000)
    retry_limit: int = Field(ge=0, le=10)
    enable_prompt_cache: bool = True


@router.get("/policies")
def get_policies() -> dict:
    policies = [p.as_dict() for p in list_policies()]
    return {"count": len(policies), "policies": policies}


@router.get("/policies/{task_name}")
def get_policy_by_task(task_name: str) -> dict:
    policy = get_policy(task_name)
    return {"task_name": task_name, "policy": policy.as_dict()}


@router.put("/policies/{task_name}")
def put_policy(task_name: str, req: UpsertPolicyRequest) -> dict:
    normalized = normalize_policy_row(task_name, req.model_dump())
    saved = upsert_policy(normalized)
    return {"ok": True, "policy": saved.as_dict()}


@router.get("/logs")
def get_logs(
    limit: int = Query(default=50, ge=1, le=500),
    task_name: Optional[str] = Query(default=None),
) -> dict:
    rows = list_call_logs(limit=limit, task_name=task_name)
    return {"count": len(rows), "logs": rows}


@router.get("/presets")
def get_presets() -> dict:
    names = sorted(name.replace("_", "-") for name in POLICY_PRESETS)
    return {"count": len(names), "presets": names}


@router.post("/presets/{preset_name}")
def apply_preset(preset_name: str) -> dict:
    build = POLICY_PRESETS.get(preset_name.replace("-", "_"))
    if build is None:
        raise HTTPException(status_code=404, detail=f"Unknown preset: {preset_name}")
    saved = [upsert_policy(policy).as_dict() for policy in build()]
    return {
        "ok": True,
        "preset": preset_name,
        "count": len(saved),
        "policies": saved,
    }
