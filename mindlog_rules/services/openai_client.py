"""
OpenAI Client Wrapper
HIPAA-aware wrapper around the chat completions API used by the journal
sentiment rule.

This module provides:
1. BAA enforcement (the client refuses to construct without a signed BAA)
2. Redaction of direct identifiers before text leaves the process
3. Audit logging of every request/response (hashes and token counts only)
"""

import hashlib
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from mindlog_rules.config import Settings
from mindlog_rules.core.logging import log_audit

logger = logging.getLogger(__name__)


class OpenAIConfigError(Exception):
    """Raised when OpenAI configuration is invalid"""
    pass


class DirectIdentifierPatterns:
    """Regex patterns for direct PHI identifiers"""
    SSN = re.compile(r'\b\d{3}-\d{2}-\d{4}\b')
    MRN = re.compile(r'\b(MRN|Medical Record Number)[:\s#]*\d{6,}\b', re.IGNORECASE)
    EMAIL = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    PHONE = re.compile(r'(?<!\d)(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b')

    ALL = [
        (SSN, "SSN"),
        (MRN, "MRN"),
        (EMAIL, "EMAIL"),
        (PHONE, "PHONE"),
    ]


def redact_direct_identifiers(text: str) -> tuple:
    """
    Replace direct identifiers with category placeholders.

    Returns:
        (redacted_text, sorted list of redacted categories)
    """
    categories = set()
    for pattern, category in DirectIdentifierPatterns.ALL:
        text, count = pattern.subn(f"[{category}_REDACTED]", text)
        if count:
            categories.add(category)
    return text, sorted(categories)


class OpenAIClientWrapper:
    """
    Chat completions client with BAA enforcement, redaction and audit logging.

    Journal text is free-form patient writing, so identifiers are redacted
    rather than blocking the call.
    """

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        if not settings.OPENAI_BAA_SIGNED:
            raise OpenAIConfigError(
                "OPENAI_BAA_SIGNED=true is required before patient text may be sent to OpenAI"
            )
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise OpenAIConfigError("OPENAI_API_KEY is required")
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)

        self._client = client
        self._environment = settings.ENVIRONMENT
        self.default_model = settings.OPENAI_MODEL
        logger.info(f"OpenAI client initialized - ENV={self._environment}, model={self.default_model}")

    @staticmethod
    def _hash_input(text: str) -> str:
        """Hash of input for audit logging (no PHI in logs)"""
        return hashlib.sha256(text.encode()).hexdigest()[:16]

    def _log_event(self, event_type: str, details: Dict[str, Any]):
        log_audit(event_type, None, {"env": self._environment, **details})

    async def chat_completions_create(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        **kwargs
    ):
        """
        Create chat completion with redaction and audit logging.

        Args:
            messages: List of message dicts with role and content
            model: Chat model, defaults to OPENAI_MODEL
            **kwargs: Passed through to the OpenAI API

        Returns:
            OpenAI chat completion response
        """
        model = model or self.default_model
        processed_messages = []
        redacted_categories = set()
        for msg in messages:
            content, categories = redact_direct_identifiers(msg.get("content", ""))
            redacted_categories.update(categories)
            processed_messages.append({**msg, "content": content})

        self._log_event("openai_chat_request", {
            "model": model,
            "message_count": len(messages),
            "input_hash": self._hash_input(str(processed_messages)),
            "redacted_categories": sorted(redacted_categories),
        })

        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=processed_messages,
                **kwargs
            )
        except Exception as e:
            self._log_event("openai_error", {
                "operation": "chat_completion",
                "model": model,
                "error_type": type(e).__name__,
            })
            raise

        usage = getattr(response, "usage", None)
        self._log_event("openai_chat_response", {
            "model": model,
            "usage": {
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
            } if usage else None,
        })
        return response
