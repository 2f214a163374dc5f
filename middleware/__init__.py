"""
HTTP middleware for the session coordinator's operational endpoints.
"""

from middleware.request_id import (
    REQUEST_ID_HEADER,
    RequestIDMiddleware,
    request_id_var,
    resolve_request_id,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "RequestIDMiddleware",
    "request_id_var",
    "resolve_request_id",
]
