"""Application layer."""

from telegram_approval_gate.application.approval import ApprovalProtocol
from telegram_approval_gate.application.models import (
    ApprovalOutcome,
    ApprovalRequest,
    Decision,
    InteractionKind,
    RequestState,
)
from telegram_approval_gate.application.permissions import PermissionEngine

__all__ = [
    "ApprovalOutcome",
    "ApprovalProtocol",
    "ApprovalRequest",
    "Decision",
    "InteractionKind",
    "PermissionEngine",
    "RequestState",
]
