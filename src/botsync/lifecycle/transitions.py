"""Monotonic transition rules for bots and sessions.

Both state machines are partial orders: a proposed status is accepted only
when it ranks strictly above the current one, and nothing leaves a terminal
status. Late or out-of-order signals are therefore harmless no-ops.
"""

from __future__ import annotations

from src.botsync.lifecycle.schemas import (
    BotStatus,
    SessionStatus,
    TransitionReason,
)

# ── Orderings ─────────────────────────────────────────────────────────────────

BOT_STATUS_RANK: dict[BotStatus, int] = {
    BotStatus.PENDING: 0,
    BotStatus.ACTIVE: 1,
    BotStatus.COMPLETED: 2,
    BotStatus.FAILED: 2,
}

SESSION_STATUS_RANK: dict[SessionStatus, int] = {
    SessionStatus.CREATED: 0,
    SessionStatus.ACTIVE: 1,
    SessionStatus.STOPPING: 2,
    SessionStatus.COMPLETED: 3,
    SessionStatus.FAILED: 3,
}

# Session status implied by a bot reaching a given status
BOT_TO_SESSION_STATUS: dict[BotStatus, SessionStatus] = {
    BotStatus.ACTIVE: SessionStatus.ACTIVE,
    BotStatus.COMPLETED: SessionStatus.COMPLETED,
    BotStatus.FAILED: SessionStatus.FAILED,
}


def decide_bot_transition(
    current: BotStatus, proposed: BotStatus
) -> TransitionReason | None:
    """Decide whether a bot may move from ``current`` to ``proposed``.

    Returns:
        None if the transition is allowed, otherwise the rejection reason.
    """
    if current.is_terminal:
        return TransitionReason.ALREADY_TERMINAL
    if current == proposed:
        return TransitionReason.UNCHANGED
    if BOT_STATUS_RANK[proposed] < BOT_STATUS_RANK[current]:
        return TransitionReason.BACKWARD
    return None


def decide_session_transition(
    current: SessionStatus, proposed: SessionStatus
) -> TransitionReason | None:
    """Decide whether a session may move from ``current`` to ``proposed``.

    Returns:
        None if the transition is allowed, otherwise the rejection reason.
    """
    if current.is_terminal:
        return TransitionReason.ALREADY_TERMINAL
    if current == proposed:
        return TransitionReason.UNCHANGED
    if SESSION_STATUS_RANK[proposed] < SESSION_STATUS_RANK[current]:
        return TransitionReason.BACKWARD
    return None


def session_status_for_bot(status: BotStatus) -> SessionStatus | None:
    """Session status that a bot in ``status`` drives its session toward."""
    return BOT_TO_SESSION_STATUS.get(status)
