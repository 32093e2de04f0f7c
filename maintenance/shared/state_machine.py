"""
Follow-Up State Machine

Defines allowed statuses and valid transitions for follow-up schedules.
The processor drives pending -> processing -> sent|failed; operators
cancel and reschedule.
"""

from enum import Enum
from typing import Final

import structlog

from maintenance.shared.exceptions import InvalidStateTransitionError

log = structlog.get_logger()


class FollowUpStatus(str, Enum):
    """
    Follow-up schedule status enum.

    States are mutually exclusive and represent where a reminder is
    in its delivery lifecycle.
    """

    PENDING = "pending"
    """Waiting for scheduled_for to pass."""

    PROCESSING = "processing"
    """Claimed by a processor run, dispatch in flight."""

    SENT = "sent"
    """Reminder delivered to the notification dispatcher."""

    FAILED = "failed"
    """Last attempt failed; retryable while attempts remain."""

    CANCELLED = "cancelled"
    """Withdrawn by an operator."""

    @property
    def is_terminal(self) -> bool:
        """Check if this is a terminal state (no outgoing transitions)."""
        return self in TERMINAL_STATES

    @classmethod
    def from_string(cls, value: str) -> "FollowUpStatus":
        """Convert string to FollowUpStatus enum."""
        try:
            return cls(value.lower())
        except ValueError as e:
            raise ValueError(
                f"Invalid follow-up status: '{value}'. "
                f"Valid values are: {[s.value for s in cls]}"
            ) from e


TERMINAL_STATES: Final[frozenset[FollowUpStatus]] = frozenset({
    FollowUpStatus.SENT,
})

# Key: current status, Value: set of allowed next statuses
VALID_TRANSITIONS: Final[dict[FollowUpStatus, frozenset[FollowUpStatus]]] = {
    FollowUpStatus.PENDING: frozenset({
        FollowUpStatus.PROCESSING,
        FollowUpStatus.CANCELLED,
    }),
    FollowUpStatus.PROCESSING: frozenset({
        FollowUpStatus.SENT,
        FollowUpStatus.FAILED,
        FollowUpStatus.CANCELLED,
    }),
    FollowUpStatus.FAILED: frozenset({
        FollowUpStatus.PROCESSING,  # retry claim after backoff
        FollowUpStatus.PENDING,     # reschedule
        FollowUpStatus.CANCELLED,
    }),
    FollowUpStatus.CANCELLED: frozenset({
        FollowUpStatus.PENDING,     # reschedule
    }),
    FollowUpStatus.SENT: frozenset(),  # Terminal
}

# Statuses the processor may claim from
CLAIMABLE_STATES: Final[frozenset[FollowUpStatus]] = frozenset({
    FollowUpStatus.PENDING,
    FollowUpStatus.FAILED,
})


def validate_transition(
    current_status: FollowUpStatus | str,
    new_status: FollowUpStatus | str,
    *,
    raise_on_invalid: bool = True,
) -> bool:
    """
    Validate that a status transition is allowed.

    Args:
        current_status: Current follow-up status
        new_status: Desired next status
        raise_on_invalid: If True, raise exception on invalid transition

    Returns:
        True if transition is valid

    Raises:
        InvalidStateTransitionError: If transition is invalid and raise_on_invalid=True
    """
    if isinstance(current_status, str):
        current_status = FollowUpStatus.from_string(current_status)
    if isinstance(new_status, str):
        new_status = FollowUpStatus.from_string(new_status)

    allowed = VALID_TRANSITIONS.get(current_status, frozenset())
    is_valid = new_status in allowed

    if not is_valid and raise_on_invalid:
        log.warning(
            "invalid_state_transition",
            current_status=current_status.value,
            new_status=new_status.value,
            allowed_transitions=[s.value for s in allowed],
        )
        raise InvalidStateTransitionError(
            current_status=current_status.value,
            new_status=new_status.value,
            allowed_transitions=sorted(s.value for s in allowed),
        )

    return is_valid


def is_retryable(status: FollowUpStatus | str, attempt_count: int, max_attempts: int) -> bool:
    """Whether the processor may still pick this schedule up."""
    if isinstance(status, str):
        status = FollowUpStatus.from_string(status)
    return status in CLAIMABLE_STATES and attempt_count < max_attempts
