"""Runtime pipeline control: effect rules and stage flags.

Changes are applied between two iterations and are not persisted.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from mirage.api.schemas.models import EffectRulesSchema, StageSchema, StageUpdateSchema
from mirage.api.services.engine import VideoEngine
from mirage.api.services.state import get_engine
from mirage.core.config.settings import RuleConfig
from mirage.core.effects.base import EffectKind
from mirage.core.errors import PipelineConfigError

router = APIRouter()


@router.get("/effects")
def list_effects(engine: VideoEngine = Depends(get_engine)) -> dict[str, list[RuleConfig]]:
    """Return the active rules per effect kind."""

    return {
        kind: [
            RuleConfig(class_id=r.class_id, min_range=r.min_range, max_range=r.max_range, color=r.color)
            for r in rules
        ]
        for kind, rules in engine.effect_rules().items()
    }


@router.put("/effects/{kind}")
def update_effect(kind: str, body: EffectRulesSchema, engine: VideoEngine = Depends(get_engine)) -> dict[str, object]:
    """Replace the rules of one effect; an empty list disables it."""

    try:
        effect_kind = EffectKind(kind.lower())
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown effect kind") from None
    try:
        engine.update_effect_rules(effect_kind, [r.to_rule() for r in body.rules])
    except (PipelineConfigError, RuntimeError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return {"kind": effect_kind.value, "rules": len(body.rules)}


@router.get("/stages")
def list_stages(engine: VideoEngine = Depends(get_engine)) -> dict[str, StageSchema]:
    stats = engine.latest_stats() or {}
    return {name: StageSchema(**s) for name, s in stats.get("stages", {}).items()}


@router.post("/stages/{stage}")
def update_stage(stage: str, body: StageUpdateSchema, engine: VideoEngine = Depends(get_engine)) -> dict[str, object]:
    """Enable/disable a stage or change its update rate."""

    try:
        engine.update_stage(stage, enabled=body.enabled, update_rate=body.update_rate)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown stage") from None
    except (PipelineConfigError, RuntimeError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return {"stage": stage, "enabled": body.enabled, "update_rate": body.update_rate}
