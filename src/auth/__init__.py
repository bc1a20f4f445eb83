"""
Authentication-path protection for the BFF.

Security:
- Brute-force rate limiting on authentication endpoints
- Operator API key for /admin endpoints
"""

from src.auth.dependencies import (
    clear_rate_limit,
    get_client_ip,
    rate_limited,
    verify_admin_key,
)

__all__ = [
    "clear_rate_limit",
    "get_client_ip",
    "rate_limited",
    "verify_admin_key",
]
