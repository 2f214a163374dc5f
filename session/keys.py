"""Storage key layout for sessions, locks and the per-user index."""

import re

from errors.exceptions import validation_error

# Identifiers become key segments, so they may not contain ':' or glob syntax
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

SESSION_KEY_PATTERN = "user:*:thread:*:session"
USER_INDEX_PATTERN = "user:*:sessions"


def validate_identifier(field_name: str, value: str) -> str:
    """Reject identifiers that would corrupt the key layout."""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise validation_error(
            f"Invalid {field_name}",
            details={
                "field": field_name,
                "reason": "Must be 1-128 characters of letters, digits, '.', '_' or '-'",
            },
        )
    return value


def session_key(user_id: str, thread_id: str) -> str:
    return f"user:{user_id}:thread:{thread_id}:session"


def lock_key(user_id: str, thread_id: str) -> str:
    return f"lock:session:{user_id}:{thread_id}"


def user_index_key(user_id: str) -> str:
    return f"user:{user_id}:sessions"


def user_id_from_index_key(key: str) -> str:
    """Inverse of user_index_key."""
    return key[len("user:"):-len(":sessions")]
