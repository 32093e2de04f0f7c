"""
ValidateSession Lambda

API Gateway Lambda behind POST /validate-session that exchanges a
supplier access code for the supplier profile and assistance scope.

Components:
- handler: Lambda entry point, request parsing and status mapping
"""

from lambdas.validate_session.handler import extract_client_ip, lambda_handler

__all__ = [
    "extract_client_ip",
    "lambda_handler",
]
