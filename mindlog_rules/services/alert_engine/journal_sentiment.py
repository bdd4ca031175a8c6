"""
Journal Sentiment Rule (RULE-008) - AI-assisted, compliance-gated.

The analyzer is chosen once at construction:
- DisabledSentimentAnalyzer unless AI_INSIGHTS_ENABLED and OPENAI_BAA_SIGNED
- OpenAISentimentAnalyzer otherwise

Any timeout, API error or response outside the strict JSON contract yields
no candidate. Each such skip is counted in journal_sentiment_skipped so the
rule cannot go dark without an operator-visible signal.
"""

import asyncio
import logging
from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from mindlog_rules.config import Settings, check_openai_baa_compliance
from mindlog_rules.core.error_handling import InferenceResponseError
from mindlog_rules.core.logging import SecureLogger
from mindlog_rules.services.openai_client import OpenAIClientWrapper
from .config_service import ALERT_THRESHOLDS, AlertSeverity, RuleKey
from .evaluation_metrics import EvaluationMetrics
from .rule_engine import RuleCandidate, fetch_recent_journal_bodies

logger = logging.getLogger(__name__)

ENTRY_SEPARATOR = "\n\n---\n\n"

PROMPT_TEMPLATE = """You are a mental health clinical assistant. Analyze the following journal entries and respond ONLY with valid JSON (no markdown, no explanation).

Journal entries (most recent first):
<entries>
{entries}
</entries>

Respond with:
{{
  "sentiment": "positive" | "neutral" | "negative" | "concerning",
  "crisis_indicators": true | false,
  "summary": "<clinical one-sentence summary, max 20 words>"
}}

"concerning" = hopelessness, worthlessness, or passive SI language.
"crisis_indicators" = true ONLY for explicit active suicidal ideation."""


class JournalSentimentAnalysis(BaseModel):
    """Structured response contract for the inference service"""
    model_config = ConfigDict(strict=True)

    sentiment: Literal["positive", "neutral", "negative", "concerning"]
    crisis_indicators: bool
    summary: str


def parse_analysis(raw: Optional[str]) -> JournalSentimentAnalysis:
    """Strictly parse the model output, raising InferenceResponseError"""
    if not raw or not raw.strip():
        raise InferenceResponseError("Empty response from inference service")
    try:
        return JournalSentimentAnalysis.model_validate_json(raw.strip())
    except ValidationError as e:
        raise InferenceResponseError(f"Response violates contract ({e.error_count()} errors)") from e


class DisabledSentimentAnalyzer:
    """Null analyzer used while the compliance gate is closed"""

    enabled = False
    model = None

    async def analyze(self, bodies: List[str]) -> Optional[JournalSentimentAnalysis]:
        return None


class OpenAISentimentAnalyzer:
    enabled = True

    def __init__(self, client: OpenAIClientWrapper, metrics: EvaluationMetrics,
                 timeout_seconds: float = 20.0, model: Optional[str] = None):
        self.client = client
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds
        self.model = model or client.default_model

    async def _request(self, bodies: List[str]) -> JournalSentimentAnalysis:
        prompt = PROMPT_TEMPLATE.format(entries=ENTRY_SEPARATOR.join(bodies))
        response = await self.client.chat_completions_create(
            messages=[{"role": "user", "content": prompt}],
            model=self.model,
            max_tokens=ALERT_THRESHOLDS.journal_max_tokens,
            temperature=0,
            response_format={"type": "json_object"},
        )
        if not response.choices:
            raise InferenceResponseError("No choices in inference response")
        return parse_analysis(response.choices[0].message.content)

    async def analyze(self, bodies: List[str]) -> Optional[JournalSentimentAnalysis]:
        """Returns None on timeout, API failure or malformed response"""
        try:
            return await asyncio.wait_for(self._request(bodies), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Journal sentiment timed out after {self.timeout_seconds}s")
            self.metrics.record_journal_skipped("timeout")
        except InferenceResponseError as e:
            SecureLogger.log(logger, logging.WARNING, f"Journal sentiment response rejected: {e}")
            self.metrics.record_journal_skipped("malformed_response")
        except Exception as e:
            logger.warning(f"Journal sentiment inference failed: {type(e).__name__}")
            self.metrics.record_journal_skipped("inference_error")
        return None


def build_sentiment_analyzer(settings: Settings, metrics: EvaluationMetrics,
                             client: Optional[OpenAIClientWrapper] = None):
    """Select the analyzer strategy from the two compliance flags"""
    if not check_openai_baa_compliance(settings):
        return DisabledSentimentAnalyzer()
    if client is None:
        client = OpenAIClientWrapper(settings)
    return OpenAISentimentAnalyzer(
        client,
        metrics,
        timeout_seconds=settings.JOURNAL_SENTIMENT_TIMEOUT_SECONDS,
        model=settings.OPENAI_MODEL,
    )


def candidate_from_analysis(analysis: Optional[JournalSentimentAnalysis],
                            model: Optional[str]) -> Optional[RuleCandidate]:
    if analysis is None:
        return None
    detail = {"sentiment": analysis.sentiment, "summary": analysis.summary, "model": model}
    if analysis.crisis_indicators:
        return RuleCandidate(RuleKey.JOURNAL_SENTIMENT, AlertSeverity.CRITICAL,
                             "Journal: crisis indicators detected", detail)
    if analysis.sentiment == "concerning":
        return RuleCandidate(RuleKey.JOURNAL_SENTIMENT, AlertSeverity.WARNING,
                             "Journal: concerning sentiment detected", detail)
    return None


async def evaluate_journal_sentiment(analyzer, session_factory, patient_id: str,
                                     as_of: date) -> Optional[RuleCandidate]:
    """Fetch the recent journal entries and classify them"""
    if not analyzer.enabled:
        return None

    def _fetch():
        with session_factory() as session:
            return fetch_recent_journal_bodies(session, patient_id, as_of)

    bodies = await asyncio.to_thread(_fetch)
    if not bodies:
        return None

    analysis = await analyzer.analyze(bodies)
    return candidate_from_analysis(analysis, analyzer.model)
