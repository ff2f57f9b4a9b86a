"""
Lifecycle transition policy.

The store records any well-formed state change; this module decides which
changes are acceptable.  Knowledge moves plasma -> fluid -> gel -> crystal as
it matures, and the two ends of that path are guarded:

- Promotion to ``crystal`` needs ``high`` confidence and a justification of
  at least 20 characters.
- Skipping straight to crystal from ``plasma`` or ``fluid`` needs the same
  20-character justification.
- Demoting a crystal to anything but ``plasma`` needs at least 30 characters.
  Dropping all the way back to plasma (explicit reopening) is always allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from .errors import StateTransitionError
from .models import CONFIDENCE_LEVELS, STATES, require_choice

if TYPE_CHECKING:
    from .database import KnowledgeGraphDatabase

logger = logging.getLogger(__name__)

CRYSTAL_PROMOTION_MIN_REASON = 20
CRYSTAL_DEMOTION_MIN_REASON = 30

_SKIP_TO_CRYSTAL = {("plasma", "crystal"), ("fluid", "crystal")}

_MEANINGS = {
    ("plasma", "fluid"): "idea captured and taking shape",
    ("fluid", "gel"): "working conclusion reached",
    ("gel", "crystal"): "validated and promoted to authority",
    ("plasma", "crystal"): "direct crystallization of a raw idea",
    ("fluid", "crystal"): "direct crystallization of developing knowledge",
    ("crystal", "plasma"): "authority reopened for fundamental rethinking",
    ("crystal", "gel"): "authority demoted for revision",
    ("crystal", "fluid"): "authority demoted to active development",
    ("gel", "fluid"): "working conclusion reopened",
    ("gel", "plasma"): "working conclusion discarded for exploration",
    ("fluid", "plasma"): "returned to exploration",
}


def validate_state_transition(
    current_state: Optional[str],
    new_state: str,
    reason: Optional[str],
    confidence: Optional[str] = None,
) -> None:
    """
    Check a proposed move from *current_state* to *new_state*.

    Parameters
    ----------
    current_state:
        State the node is in now (None for a node with no recorded state).
    new_state:
        Target state.
    reason:
        Human justification for the change.
    confidence:
        Confidence the node will carry after the move.

    Raises
    ------
    StateTransitionError
        The move is not acceptable.
    ValidationError
        An argument is not a recognised state / confidence level.
    """
    require_choice(new_state, STATES, "new_state")
    if current_state is not None:
        require_choice(current_state, STATES, "current_state")
    if confidence is not None:
        require_choice(confidence, CONFIDENCE_LEVELS, "confidence")

    reason_len = len((reason or "").strip())
    if reason_len == 0:
        raise StateTransitionError(current_state, new_state, "a reason is required")

    if new_state == "crystal":
        if confidence != "high":
            raise StateTransitionError(
                current_state, new_state,
                f"crystal authority requires high confidence (got {confidence or 'none'})",
            )
        if reason_len < CRYSTAL_PROMOTION_MIN_REASON:
            raise StateTransitionError(
                current_state, new_state,
                "insufficient justification for crystal authority",
            )

    if (current_state, new_state) in _SKIP_TO_CRYSTAL and reason_len < CRYSTAL_PROMOTION_MIN_REASON:
        raise StateTransitionError(
            current_state, new_state,
            f"skipping to crystal requires a reason of at least {CRYSTAL_PROMOTION_MIN_REASON} characters",
        )

    if current_state == "crystal" and new_state != "plasma" and reason_len < CRYSTAL_DEMOTION_MIN_REASON:
        raise StateTransitionError(
            current_state, new_state,
            "insufficient justification for crystal authority demotion",
        )


def describe_transition(current_state: Optional[str], new_state: str) -> str:
    """Short human description of what a move means in the lifecycle."""
    if current_state == new_state:
        return "state unchanged"
    if current_state is None:
        return f"initial state {new_state}"
    return _MEANINGS.get((current_state, new_state), f"{current_state} to {new_state}")


def transition_node(
    db: "KnowledgeGraphDatabase",
    node_id: int,
    new_state: str,
    reason: str,
    confidence: Optional[str] = None,
    evidence_quality: float = 0.5,
    user_id: Optional[str] = None,
) -> int:
    """
    Validate and apply a state change to node *node_id*.

    *confidence* defaults to the node's current confidence, so a promotion
    to crystal succeeds without it only when the node is already ``high``.
    Returns the id of the recorded history row.
    """
    node = db.require_node(node_id)
    effective_confidence = confidence or node.confidence
    validate_state_transition(node.state, new_state, reason, effective_confidence)
    history_id = db.apply_state_transition(
        node_id,
        new_state,
        reason=reason,
        to_confidence=effective_confidence,
        evidence_quality=evidence_quality,
        user_id=user_id,
    )
    logger.info(
        "[KG] %s: %s (%s)", node.path, describe_transition(node.state, new_state), reason
    )
    return history_id
