from fastapi import APIRouter, Depends
from app.core.dependencies import get_caller_identity, require_rollout_operator
from app.core.exceptions import NotFoundError
from app.models.invite import CallerIdentity
from app.models.rollout import RolloutFlag, RolloutGateDecision, RolloutUpdateRequest
from app.services.invite_service import InviteService, get_invite_service

router = APIRouter()


def _require_known_feature(feature: str, service: InviteService):
    if feature != service.feature_name:
        raise NotFoundError(f"Feature desconocida: {feature}")


@router.get("/{feature}", response_model=RolloutFlag)
async def get_rollout_flag(
    feature: str,
    service: InviteService = Depends(get_invite_service)
):
    """Current rollout percent for a feature"""
    _require_known_feature(feature, service)
    return await service.rollout_config.get(feature)


@router.put("/{feature}", response_model=RolloutFlag)
async def set_rollout_flag(
    feature: str,
    data: RolloutUpdateRequest,
    operator: str = Depends(require_rollout_operator),
    service: InviteService = Depends(get_invite_service)
):
    """
    Manual override of the rollout percent.

    Requires the X-Rollout-Key header. Restarts the monitor's stage window.
    """
    _require_known_feature(feature, service)
    return await service.monitor.manual_override(data.percent, operator)


@router.get("/{feature}/decision", response_model=RolloutGateDecision)
async def get_rollout_decision(
    feature: str,
    caller: CallerIdentity = Depends(get_caller_identity),
    service: InviteService = Depends(get_invite_service)
):
    """Whether the caller (user id, or client IP when anonymous) is on the new invite path"""
    _require_known_feature(feature, service)
    identity = caller.user_id or caller.client_ip or "anonymous"
    return await service.gate.decide(identity, feature)


@router.get("/{feature}/metrics", dependencies=[Depends(require_rollout_operator)])
async def get_rollout_metrics(
    feature: str,
    service: InviteService = Depends(get_invite_service)
):
    """Funnel metrics for the current stage and what evaluate() would decide now"""
    _require_known_feature(feature, service)
    decision = await service.monitor.evaluate()
    return {
        "featureName": feature,
        "metrics": service.monitor.metrics().to_dict(),
        "decision": decision.model_dump(by_alias=True, mode="json")
    }
