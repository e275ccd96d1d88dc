"""Shared-password authentication and device identification for API routes."""

import logging
import secrets

from fastapi import Header, Query

from collabtable.config import config

logger = logging.getLogger("collabtable.auth")

_warning_logged = False


class UnauthorizedError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def check_authorization(header: str | None) -> str | None:
    """Validate an ``Authorization`` header value.

    Returns None when the request may proceed, otherwise the reason it was
    rejected. With no server password configured every request passes.
    """
    global _warning_logged
    password = config.server_password
    if not password:
        if not _warning_logged:
            logger.warning("No server password configured. Authentication is disabled.")
            _warning_logged = True
        return None

    if not header:
        return "No authorization header provided"

    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        return "Invalid authorization header format. Expected: Bearer <password>"

    if not secrets.compare_digest(parts[1].encode(), password.encode()):
        return "Invalid password"
    return None


async def require_password(authorization: str | None = Header(None)):
    """FastAPI dependency guarding every ``/api`` route."""
    reason = check_authorization(authorization)
    if reason is not None:
        raise UnauthorizedError(reason)


async def get_device_id(
    x_device_id: str | None = Header(None),
    device_id: str | None = Query(None, alias="deviceId"),
) -> str | None:
    """Originating device, from the ``X-Device-Id`` header or ``deviceId`` query."""
    value = (x_device_id or device_id or "").strip()
    return value or None
