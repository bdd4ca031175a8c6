"""
Secure Logging Utility - HIPAA-Compliant
Structured audit lines for alert lifecycle events.

SECURITY REQUIREMENTS:
- Patient identifiers may be logged, free text (journal bodies) never is
- Structured JSON for audit trails
- Emails, IPs and tokens stripped from any message flagged as sensitive
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the root logger for the worker process"""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


class SecureLogger:
    """
    Secure logging wrapper that prevents sensitive data leakage
    """

    SENSITIVE_PATTERNS = [
        r'password',
        r'secret',
        r'token',
        r'api[_-]?key',
        r'credential',
        r'authorization',
        r'bearer',
        r'journal',
        r'phi',
    ]

    @staticmethod
    def sanitize_message(message: str) -> str:
        """
        Sanitize log message to remove sensitive information

        Args:
            message: Original log message

        Returns:
            Sanitized log message
        """
        message = re.sub(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[email]', message)
        message = re.sub(r'\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b', '[ip]', message)
        message = re.sub(r'\b[A-Za-z0-9]{32,}\b', '[token]', message)

        # Keep first line of multi-line messages only
        if '\n' in message:
            message = message.split('\n')[0] + ' [truncated]'

        return message

    @staticmethod
    def should_sanitize(message: str) -> bool:
        """Check if message contains sensitive patterns"""
        message_lower = message.lower()
        return any(re.search(pattern, message_lower) for pattern in SecureLogger.SENSITIVE_PATTERNS)

    @classmethod
    def log(cls, logger: logging.Logger, level: int, message: str, **kwargs):
        if cls.should_sanitize(message):
            logger.log(level, f"[SANITIZED] {cls.sanitize_message(message)}", **kwargs)
        else:
            logger.log(level, message, **kwargs)


def log_audit(event_type: str, actor_id: Optional[str], details: Dict[str, Any]):
    """
    Log audit event with structured data

    Args:
        event_type: e.g. alert_created, alert_suppressed, alert_acknowledged
        actor_id: Clinician ID, or None for the rules worker itself
        details: Additional event details (identifiers only)
    """
    audit_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "actor_id": actor_id,
        "details": details
    }
    logging.getLogger("audit").info(f"[AUDIT] {json.dumps(audit_entry, default=str)}")
