"""
Utility functions for mdmbridge.
"""

import hmac
import logging

logger = logging.getLogger(__name__)


def credentials_match(username: str, password: str, expected_username: str, expected_password: str) -> bool:
    """
    Check HTTP Basic credentials.

    Both comparisons always run, in constant time, so the response time
    does not reveal which part was wrong.
    """
    user_ok = hmac.compare_digest(username.encode("utf-8"), expected_username.encode("utf-8"))
    pass_ok = hmac.compare_digest(password.encode("utf-8"), expected_password.encode("utf-8"))
    is_valid = user_ok and pass_ok
    logger.debug(f"Basic auth verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def parse_udid_list(value: str) -> frozenset:
    """Split a comma separated UDID list, ignoring blanks."""
    return frozenset(part.strip() for part in value.split(",") if part.strip())
