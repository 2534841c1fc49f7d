"""
Unit tests for the enrichment gateway.

The inference backend is scripted in memory; retries use zero backoff.
"""

import json
import os
import shutil
import tempfile
from unittest.mock import Mock

import pytest

from spend_guard.backends.memory import InMemoryInferenceBackend
from spend_guard.config.loader import EnrichmentSettings
from spend_guard.core.anomaly import OVERALL_SERVICE
from spend_guard.core.circuit_breaker import CostCircuitBreaker
from spend_guard.core.errors import BackendError, OperationCancelled, TransientBackendError
from spend_guard.core.models import FALLBACK_CONFIDENCE, FALLBACK_MODEL
from spend_guard.core.rate_limiter import RateLimiter
from spend_guard.core.retry import CancellationToken, Deadline, RetryConfig, RetryPolicy
from spend_guard.enrichment.gateway import DISABLED_REASON, EnrichmentGateway, fallback_analysis
from spend_guard.enrichment.recommendations import RecommendationCategory
from spend_guard.sdk.openai_client import OpenAIInferenceBackend
from conftest import build_analysis

ANALYSIS_REPLY = json.dumps({
    "summary": "Compute drives most of the spend",
    "keyInsights": ["EC2 is 80% of spend"],
    "confidenceScore": 0.9,
})


def fast_retry(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(RetryConfig(max_attempts=max_attempts, base_delay=0, max_delay=0, jitter=0))


class TestEnrichmentGateway:
    """Test gating order and degradation."""

    def setup_method(self):
        self.analysis = build_analysis({"EC2": 80.0, "S3": 20.0})
        self.breaker = CostCircuitBreaker(monthly_cap=1.0)
        self.limiter = RateLimiter(max_calls=5)

    def gateway(self, backend, **settings):
        return EnrichmentGateway(
            backend,
            settings=EnrichmentSettings(**settings),
            rate_limiter=self.limiter,
            breaker=self.breaker,
            retry_policy=fast_retry()
        )

    def test_successful_analysis_records_cost(self):
        backend = InMemoryInferenceBackend([ANALYSIS_REPLY], cost_per_call=0.002)

        result = self.gateway(backend).analyze(self.analysis)

        assert result.summary == "Compute drives most of the spend"
        assert result.model_used == "gpt-4o-mini"
        assert result.processing_cost == 0.002
        assert not result.is_fallback
        assert self.breaker.state().cumulative_cost == pytest.approx(0.002)
        assert self.limiter.state().calls_in_window == 1

    def test_open_breaker_skips_backend(self):
        backend = InMemoryInferenceBackend([ANALYSIS_REPLY])
        self.breaker.record(1.0)

        result = self.gateway(backend).analyze(self.analysis)

        assert result.model_used == FALLBACK_MODEL
        assert result.confidence_score == FALLBACK_CONFIDENCE
        assert "cap" in result.fallback_reason
        assert backend.calls == 0
        assert self.limiter.state().calls_in_window == 0

    def test_rate_limit_past_deadline_falls_back(self):
        self.limiter = RateLimiter(max_calls=1)
        backend = InMemoryInferenceBackend(default=ANALYSIS_REPLY)
        gateway = self.gateway(backend)

        first = gateway.analyze(self.analysis, deadline=Deadline(0.5))
        second = gateway.analyze(self.analysis, deadline=Deadline(0.5))

        assert not first.is_fallback
        assert second.is_fallback
        assert backend.calls == 1

    def test_transient_errors_retried(self):
        backend = InMemoryInferenceBackend([TransientBackendError("503"), ANALYSIS_REPLY])

        result = self.gateway(backend).analyze(self.analysis)

        assert not result.is_fallback
        assert backend.calls == 2

    def test_exhausted_retries_fall_back(self):
        backend = InMemoryInferenceBackend([TransientBackendError("503")] * 3)

        result = self.gateway(backend).analyze(self.analysis)

        assert result.is_fallback
        assert "after 3 attempt(s)" in result.fallback_reason
        assert self.breaker.state().cumulative_cost == 0.0

    def test_backend_error_falls_back(self):
        backend = InMemoryInferenceBackend([BackendError("access denied")])

        result = self.gateway(backend).analyze(self.analysis)

        assert result.fallback_reason == "access denied"
        assert backend.calls == 1

    def test_backend_error_raised_without_fallback(self):
        backend = InMemoryInferenceBackend([BackendError("access denied")])

        with pytest.raises(BackendError, match="access denied"):
            self.gateway(backend, fallback_on_error=False).analyze(self.analysis)

    def test_disabled(self):
        backend = InMemoryInferenceBackend([ANALYSIS_REPLY])

        result = self.gateway(backend, enabled=False).analyze(self.analysis)

        assert result.fallback_reason == DISABLED_REASON
        assert backend.calls == 0

    def test_no_backend(self):
        assert self.gateway(None).analyze(self.analysis).fallback_reason == DISABLED_REASON

    def test_cancellation_propagates(self):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            self.gateway(InMemoryInferenceBackend()).analyze(self.analysis, cancel_token=token)

    def test_prompt_sent(self):
        backend = InMemoryInferenceBackend([ANALYSIS_REPLY])
        self.gateway(backend).analyze(self.analysis)
        assert "EC2: $80.00" in backend.prompts[0]


class TestGatewayLedgerFailure:
    """A billed completion is charged to the breaker even if usage recording fails."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.breaker = CostCircuitBreaker(monthly_cap=1.0)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_cost_recorded_without_usage_schema(self):
        client = Mock()
        client.chat.completions.create.return_value = Mock(
            id="chatcmpl-1",
            choices=[Mock(message=Mock(content=ANALYSIS_REPLY))],
            usage=Mock(prompt_tokens=200000, completion_tokens=10000)
        )
        backend = OpenAIInferenceBackend(
            "gpt-4o-mini", db_path=os.path.join(self.temp_dir, "uninitialized.db"), client=client
        )
        gateway = EnrichmentGateway(backend, breaker=self.breaker, retry_policy=fast_retry())

        result = gateway.analyze(build_analysis({"EC2": 80.0, "S3": 20.0}))

        assert not result.is_fallback
        assert client.chat.completions.create.call_count == 1
        assert result.processing_cost > 0
        assert self.breaker.state().cumulative_cost == pytest.approx(result.processing_cost)


class TestGatewayAnomalies:
    """Test anomaly detection through the gateway."""

    def setup_method(self):
        self.current = build_analysis({"EC2": 80.0, "S3": 20.0})
        self.historical = [build_analysis({"EC2": 10.0, "S3": 20.0}), build_analysis({"EC2": 10.0, "S3": 20.0})]

    def test_model_anomalies_rescored(self):
        reply = json.dumps({"anomaliesDetected": True, "anomalies": [
            {"service": "EC2", "severity": "HIGH", "description": "spike", "confidenceScore": 0.5},
        ]})
        gateway = EnrichmentGateway(InMemoryInferenceBackend([reply]), retry_policy=fast_retry())

        result = gateway.detect_anomalies(self.current, self.historical)

        assert result.model_used == "gpt-4o-mini"
        assert result.anomalies_detected
        assert result.anomalies[0].service == "EC2"
        assert result.anomalies[0].confidence_score == 1.0

    def test_statistical_fallback(self):
        gateway = EnrichmentGateway(None)

        result = gateway.detect_anomalies(self.current, self.historical)

        assert result.model_used == FALLBACK_MODEL
        assert result.fallback_reason == DISABLED_REASON
        assert OVERALL_SERVICE in [a.service for a in result.anomalies]


class TestGatewayRecommendations:
    """Test recommendations through the gateway."""

    def setup_method(self):
        self.analysis = build_analysis({"Amazon Elastic Compute Cloud - Compute": 80.0, "S3": 20.0})

    def test_model_recommendations_normalized(self):
        reply = json.dumps({"recommendations": [{
            "category": "SPOT_INSTANCES",
            "service": "Amazon Elastic Compute Cloud - Compute",
            "description": "Use spot for batch jobs",
            "estimatedSavings": 500,
            "priority": "LOW",
            "implementationComplexity": "COMPLEX",
        }]})
        gateway = EnrichmentGateway(InMemoryInferenceBackend([reply]), retry_policy=fast_retry())

        result = gateway.recommend(self.analysis)

        assert result.fallback_reason is None
        assert result.recommendations[0].estimated_savings == 64.0
        assert result.recommendations[0].category == RecommendationCategory.SPOT_INSTANCES

    def test_open_breaker_uses_rules(self):
        breaker = CostCircuitBreaker(monthly_cap=0.5)
        breaker.record(0.5)
        backend = InMemoryInferenceBackend()
        gateway = EnrichmentGateway(backend, breaker=breaker, retry_policy=fast_retry())

        result = gateway.recommend(self.analysis)

        assert result.model_used == FALLBACK_MODEL
        assert result.recommendations
        assert backend.calls == 0


class TestFallbackAnalysis:
    """Test the deterministic summary."""

    def test_content(self, over_budget_analysis):
        result = fallback_analysis(over_budget_analysis, "offline")

        assert result.summary == (
            "Current AWS spending is $15.50 with projected monthly cost of $31.00."
        )
        assert result.key_insights[0] == "Top cost driver: Amazon Elastic Compute Cloud - Compute ($10.25)"
        assert result.fallback_reason == "offline"
        assert result.is_fallback
