# Follow-Up Reminders
"""
Follow-up schedule store and the periodic reminder processor.
"""

from maintenance.followups.store import (
    FollowUpStats,
    cancel_follow_up,
    create_follow_up,
    get_follow_up_stats,
    list_follow_ups,
    load_follow_up,
    reschedule_follow_up,
)
from maintenance.followups.processor import (
    ProcessingResult,
    process_follow_ups,
)

__all__ = [
    # Store
    "FollowUpStats",
    "cancel_follow_up",
    "create_follow_up",
    "get_follow_up_stats",
    "list_follow_ups",
    "load_follow_up",
    "reschedule_follow_up",
    # Processor
    "ProcessingResult",
    "process_follow_ups",
]
