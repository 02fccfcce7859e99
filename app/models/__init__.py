# Models module for Property Invites API
from app.models.invite import (
    InviteToken, TenantPropertyLink, PropertyPreview,
    InviteIssueRequest, IssuedInvite, InviteLegacyPath, InviteSummary, InviteListResponse,
    InviteTokenRequest, InviteValidateResponse, InviteAcceptResponse,
    InviteRevokeRequest, InviteRevokeResponse, InviteEventRequest,
    CallerIdentity, ValidationResult, AcceptResult, ConsumeResult,
    InviteStatus, InviteErrorKind, ConsumeOutcome, RevokeOutcome,
    normalize_email
)
from app.models.rollout import (
    RolloutFlag, RolloutUpdateRequest, RolloutGateDecision,
    InviteEvent, FunnelMetrics, RolloutDecision,
    InviteEventName, RolloutAction
)
