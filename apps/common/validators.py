"""
Shared validation and audit helpers for the woofpay platform.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


# ===============================================================================
# AUDIT LOGGING INTEGRATION
# ===============================================================================


def log_security_event(
    event_type: str,
    details: dict[str, Any],
    request_ip: str | None = None,
    user_email: str | None = None,
) -> None:
    """
    Log security events for monitoring and forensics
    """
    try:
        actor = f" by {user_email}" if user_email else ""
        logger.warning(f"🚨 [Security] {event_type}: {details} from IP: {request_ip}{actor}")
    except Exception as e:
        logger.error(f"Failed to log security event: {e}")
