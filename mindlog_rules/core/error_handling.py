"""
Error Handling & Sanitization
Exception hierarchy for the rules engine and the sanitizer that produces
operator-visible failure reasons for failed jobs.

SECURITY REQUIREMENTS:
- No PHI, SQL or connection strings in stored failure reasons
- Detailed errors only in secure logs
"""

import logging
import uuid
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class RulesEngineError(Exception):
    """Base class for rules engine failures"""


class EvaluatorError(RulesEngineError):
    """A single rule or risk factor evaluator failed"""

    def __init__(self, rule: str, message: str):
        self.rule = rule
        super().__init__(f"{rule}: {message}")


class InferenceResponseError(RulesEngineError):
    """The inference service returned a response outside the strict contract"""


class AlertNotFoundError(RulesEngineError):
    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")


class InvalidAlertTransition(RulesEngineError):
    """Status transition not permitted from the alert's current status"""

    def __init__(self, alert_id: str, status: str, action: str):
        self.alert_id = alert_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} alert {alert_id} in status '{status}'")


class JobPayloadError(RulesEngineError):
    """A queued job could not be decoded"""


class ErrorSanitizer:
    """Sanitizes errors to prevent information leakage"""

    SENSITIVE_PATTERNS = [
        'password', 'secret', 'token', 'key', 'credential',
        'database', 'connection', 'sql', 'query', 'stack',
        'traceback', 'file', 'path', 'internal', 'server',
        'journal', 'patient',
    ]

    @staticmethod
    def sanitize_error(error: Exception, context: Optional[str] = None) -> Dict[str, Any]:
        """
        Sanitize an exception into a failure reason safe to store on a job

        Args:
            error: Exception instance
            context: Where the error happened (e.g. "rules_job")

        Returns:
            Sanitized error dictionary
        """
        error_type = type(error).__name__
        error_lower = str(error).lower()

        if isinstance(error, (AlertNotFoundError, InvalidAlertTransition, JobPayloadError)):
            result = {"error": str(error), "type": error_type}
        elif any(pattern in error_lower for pattern in ErrorSanitizer.SENSITIVE_PATTERNS):
            result = {
                "error": "An error occurred processing the job",
                "type": "internal_error",
                "error_id": ErrorSanitizer._generate_error_id()
            }
        elif isinstance(error, (TimeoutError, ConnectionError)):
            result = {"error": "Service temporarily unavailable", "type": error_type}
        else:
            result = {
                "error": "An error occurred processing the job",
                "type": error_type,
                "error_id": ErrorSanitizer._generate_error_id()
            }

        if context:
            result["context"] = context
        return result

    @staticmethod
    def _generate_error_id() -> str:
        """Generate a unique error ID for tracking"""
        return str(uuid.uuid4())[:8]
