"""
ProcessFollowUps Lambda

Periodic Lambda that delivers due follow-up reminders to suppliers.

Components:
- handler: Lambda entry point for the scheduled trigger and POST /process-followups
"""

from lambdas.process_followups.handler import lambda_handler

__all__ = [
    "lambda_handler",
]
