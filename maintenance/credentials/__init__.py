# Supplier Credentials
"""
Access code issuance, session validation and validation rate limiting.
"""

from maintenance.credentials.codes import (
    build_portal_url,
    generate_access_code,
    get_or_issue,
    issue,
    load_access_code,
)
from maintenance.credentials.rate_limiter import (
    CounterStore,
    DynamoCounterStore,
    InMemoryCounterStore,
    RateLimitDecision,
    RateLimiter,
)
from maintenance.credentials.validator import SessionValidation, validate_session

__all__ = [
    # Issuer
    "build_portal_url",
    "generate_access_code",
    "get_or_issue",
    "issue",
    "load_access_code",
    # Rate limiting
    "CounterStore",
    "DynamoCounterStore",
    "InMemoryCounterStore",
    "RateLimitDecision",
    "RateLimiter",
    # Validation
    "SessionValidation",
    "validate_session",
]
