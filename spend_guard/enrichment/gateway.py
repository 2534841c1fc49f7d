"""
Enrichment gateway.

Every call to the inference backend passes, in order, the cost circuit
breaker, the rate limiter and the retry policy. On success the call's
cost is recorded against the breaker. When enrichment is unavailable the
gateway degrades to a deterministic fallback instead of failing.
"""

from typing import Optional, Sequence

from loguru import logger

from ..backends.base import InferenceBackend, InferenceParams, InferenceResponse
from ..config.loader import EnrichmentSettings
from ..core.anomaly import AnomalyResult, detect_anomalies, enhance_anomaly_confidence
from ..core.circuit_breaker import CostCircuitBreaker
from ..core.errors import (
    BackendError,
    CostCapExceeded,
    OperationCancelled,
    RateLimitExceeded,
    SpendGuardError,
)
from ..core.models import FALLBACK_CONFIDENCE, FALLBACK_MODEL, AIAnalysisResult, CostAnalysis
from ..core.rate_limiter import RateLimiter
from ..core.retry import CancellationToken, Deadline, RetryPolicy
from .prompts import (
    build_analysis_prompt,
    build_anomaly_prompt,
    build_recommendation_prompt,
    parse_analysis_response,
    parse_anomaly_response,
    parse_recommendation_response,
)
from .recommendations import RecommendationResult, enhance_recommendations, fallback_recommendations

DISABLED_REASON = "enrichment disabled"


def fallback_analysis(analysis: CostAnalysis, reason: Optional[str] = None) -> AIAnalysisResult:
    """Deterministic summary built from the cost breakdown alone."""
    ranked = analysis.ranked_services()
    if ranked:
        top_name, top_cost = ranked[0]
        top_line = f"Top cost driver: {top_name} (${top_cost:.2f})"
    else:
        top_line = "Top cost driver: Unknown ($0.00)"
    return AIAnalysisResult(
        summary=(
            f"Current AWS spending is ${analysis.total_cost:.2f} with projected monthly "
            f"cost of ${analysis.projected_monthly:.2f}."
        ),
        key_insights=(
            top_line,
            "AI analysis unavailable - using basic cost breakdown",
            "Consider reviewing high-cost services for optimization opportunities",
        ),
        confidence_score=FALLBACK_CONFIDENCE,
        model_used=FALLBACK_MODEL,
        fallback_reason=reason
    )


class EnrichmentGateway:
    """Rate-limited, cost-capped access to the inference backend."""

    def __init__(
        self,
        backend: Optional[InferenceBackend],
        settings: Optional[EnrichmentSettings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        breaker: Optional[CostCircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.backend = backend
        self.settings = settings or EnrichmentSettings()
        self.rate_limiter = rate_limiter or RateLimiter(self.settings.rate_limit_per_minute)
        self.breaker = breaker or CostCircuitBreaker(self.settings.monthly_cost_cap)
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def available(self) -> bool:
        return self.settings.enabled and self.backend is not None

    def _invoke(
        self,
        prompt: str,
        operation: str,
        deadline: Optional[Deadline],
        cancel_token: Optional[CancellationToken]
    ) -> InferenceResponse:
        """Run one gated backend call.

        Raises:
            CostCapExceeded: Breaker open, backend not called
            RateLimitExceeded: No slot before the deadline
            OperationCancelled: Run cancelled while waiting
            SpendGuardError: Backend failure after retries
        """
        self.breaker.check()
        self.rate_limiter.acquire(deadline=deadline, cancel_token=cancel_token)

        params = InferenceParams(
            model=self.settings.model,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
            operation=operation
        )
        result = self.retry_policy.execute(
            lambda: self.backend.invoke(prompt, params),
            deadline=deadline,
            cancel_token=cancel_token,
            operation_name=f"enrichment {operation}"
        )
        if not result.ok:
            if isinstance(result.error, SpendGuardError):
                raise result.error
            raise BackendError(f"enrichment {operation}: {result.error}") from result.error

        response = result.value
        self.breaker.record(response.cost)
        return response

    def _degrade(self, operation: str, error: SpendGuardError) -> str:
        """Log a degradation and return its reason, or re-raise if not allowed."""
        if isinstance(error, OperationCancelled):
            raise error
        if isinstance(error, (CostCapExceeded, RateLimitExceeded)):
            logger.warning(f"Enrichment {operation} using fallback: {error}")
            return str(error)
        if not self.settings.fallback_on_error:
            raise error
        logger.error(f"Enrichment {operation} failed, using fallback: {error}")
        return str(error)

    def analyze(
        self,
        analysis: CostAnalysis,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AIAnalysisResult:
        """Summarize spend with the model, or fall back to arithmetic.

        Args:
            analysis: Current cost breakdown
            deadline: Budget for rate-limit waits and retries
            cancel_token: Optional cancellation flag

        Returns:
            AIAnalysisResult; ``model_used == "fallback"`` when degraded

        Raises:
            OperationCancelled: If the run is cancelled
            SpendGuardError: Backend failure with fallback_on_error disabled
        """
        if not self.available:
            return fallback_analysis(analysis, DISABLED_REASON)
        try:
            response = self._invoke(build_analysis_prompt(analysis), "analyze", deadline, cancel_token)
        except SpendGuardError as e:
            return fallback_analysis(analysis, self._degrade("analyze", e))
        return parse_analysis_response(response.text, response.model, response.cost)

    def detect_anomalies(
        self,
        current: CostAnalysis,
        historical: Sequence[CostAnalysis] = (),
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AnomalyResult:
        """Model-reported anomalies re-scored against the data.

        The fallback flags statistical deviations from historical periods.
        """
        if not self.available:
            return detect_anomalies(current, historical, fallback_reason=DISABLED_REASON)
        try:
            response = self._invoke(
                build_anomaly_prompt(current, historical), "detect_anomalies", deadline, cancel_token
            )
        except SpendGuardError as e:
            reason = self._degrade("detect_anomalies", e)
            return detect_anomalies(current, historical, fallback_reason=reason)

        anomalies = enhance_anomaly_confidence(parse_anomaly_response(response.text), current, historical)
        return AnomalyResult(anomalies=anomalies, model_used=response.model)

    def recommend(
        self,
        analysis: CostAnalysis,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> RecommendationResult:
        """Model-proposed optimizations with savings normalized to the data."""
        if not self.available:
            return RecommendationResult(
                recommendations=fallback_recommendations(analysis),
                model_used=FALLBACK_MODEL,
                fallback_reason=DISABLED_REASON
            )
        try:
            response = self._invoke(build_recommendation_prompt(analysis), "recommend", deadline, cancel_token)
        except SpendGuardError as e:
            return RecommendationResult(
                recommendations=fallback_recommendations(analysis),
                model_used=FALLBACK_MODEL,
                fallback_reason=self._degrade("recommend", e)
            )

        recommendations = enhance_recommendations(parse_recommendation_response(response.text), analysis)
        return RecommendationResult(recommendations=recommendations, model_used=response.model)
