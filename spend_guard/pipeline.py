"""
Spend monitor pipeline.

One run per external trigger: fetch costs, evaluate the threshold,
enrich the alert, dispatch it. Every external call in the run shares one
deadline derived from the configured time budget.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence

import openai
from loguru import logger

from .alerts.dispatcher import AlertDispatcher, DispatchReport
from .backends.base import CostSource
from .backends.cost_explorer import CostExplorerSource
from .backends.sns import SnsBroadcastPublisher, SnsPushBackend
from .config.loader import SpendGuardConfig
from .core.anomaly import AnomalyResult
from .core.circuit_breaker import CostCircuitBreaker
from .core.errors import OperationCancelled
from .core.models import AlertContext, CostAnalysis
from .core.rate_limiter import RateLimiter
from .core.retry import CancellationToken, Deadline, RetryPolicy
from .core.threshold import ThresholdEvaluator
from .devices.registry import DeviceRegistry
from .enrichment.gateway import EnrichmentGateway
from .sdk.openai_client import OpenAIInferenceBackend
from .storage.repository import SqliteDeviceStore, SqliteSpendLedger, initialize_schema


class PipelineStatus(Enum):
    NO_ALERT = "no_alert"
    ALERT_SENT = "alert_sent"
    DELIVERY_FAILED = "delivery_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PipelineResult:
    """What one run decided and delivered."""
    status: PipelineStatus
    analysis: Optional[CostAnalysis] = None
    context: Optional[AlertContext] = None
    anomalies: Optional[AnomalyResult] = None
    report: Optional[DispatchReport] = None

    @property
    def alerted(self) -> bool:
        return self.status in (PipelineStatus.ALERT_SENT, PipelineStatus.DELIVERY_FAILED)


class SpendMonitorPipeline:
    """Plain composition of the monitoring components."""

    def __init__(
        self,
        config: SpendGuardConfig,
        cost_source: CostSource,
        evaluator: ThresholdEvaluator,
        gateway: EnrichmentGateway,
        dispatcher: AlertDispatcher,
        retry_policy: Optional[RetryPolicy] = None,
        detect_anomalies: bool = False
    ):
        self.config = config
        self.cost_source = cost_source
        self.evaluator = evaluator
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.retry_policy = retry_policy or RetryPolicy(config.retry)
        self.detect_anomalies = detect_anomalies

    def run(
        self,
        historical: Optional[Sequence[CostAnalysis]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> PipelineResult:
        """Run one monitoring pass.

        Args:
            historical: Earlier periods for anomaly detection
            cancel_token: Optional cancellation flag

        Returns:
            PipelineResult. Enrichment failures degrade to fallback and
            never fail the run; delivery failures are reported in it.

        Raises:
            ValidationError: Malformed cost data or threshold
            SpendGuardError: Cost retrieval failed after retries
        """
        deadline = Deadline(self.config.monitor.time_budget_seconds)
        try:
            analysis = self.retry_policy.call(
                self.cost_source.get_costs,
                deadline=deadline,
                cancel_token=cancel_token,
                operation_name="fetch costs"
            )
            logger.info(f"Current spend ${analysis.total_cost:.2f}, threshold ${self.config.monitor.threshold:.2f}")

            context = self.evaluator.evaluate(analysis, self.config.monitor.threshold)
            if context is None:
                logger.info("Spend within threshold, no alert")
                return PipelineResult(PipelineStatus.NO_ALERT, analysis=analysis)

            ai_analysis = self.gateway.analyze(analysis, deadline=deadline, cancel_token=cancel_token)
            context = replace(context, ai_analysis=ai_analysis)

            anomalies = None
            if self.detect_anomalies:
                anomalies = self.gateway.detect_anomalies(
                    analysis, historical or (), deadline=deadline, cancel_token=cancel_token
                )
                if anomalies.anomalies_detected:
                    logger.warning(f"{len(anomalies.anomalies)} spending anomaly(ies) detected")

            report = self.dispatcher.dispatch(
                analysis,
                context,
                self.config.broadcast.topic_arn,
                deadline=deadline,
                cancel_token=cancel_token
            )
        except OperationCancelled as e:
            logger.warning(f"Monitoring run cancelled: {e}")
            return PipelineResult(PipelineStatus.CANCELLED)

        status = PipelineStatus.ALERT_SENT if report.success else PipelineStatus.DELIVERY_FAILED
        return PipelineResult(status, analysis=analysis, context=context, anomalies=anomalies, report=report)

    @classmethod
    def from_config(
        cls,
        config: SpendGuardConfig,
        cost_source: Optional[CostSource] = None,
        detect_anomalies: bool = False
    ) -> "SpendMonitorPipeline":
        """Wire the AWS, OpenAI and SQLite backends named in ``config``."""
        db_path = config.storage.db_path
        initialize_schema(db_path)
        retry_policy = RetryPolicy(config.retry)

        registry = None
        push_backend = None
        if config.push is not None:
            push_backend = SnsPushBackend(
                config.push.platform_application_arn,
                region=config.push.region,
                sandbox=config.push.sandbox
            )
            registry = DeviceRegistry(push_backend, SqliteDeviceStore(db_path), retry_policy)

        settings = config.enrichment
        backend = None
        if settings is not None and settings.enabled:
            try:
                backend = OpenAIInferenceBackend(settings.model, db_path=db_path)
            except openai.OpenAIError as e:
                logger.warning(f"Inference backend unavailable, enrichment will use fallback: {e}")

        gateway_kwargs = {}
        if settings is not None:
            gateway_kwargs = {
                "rate_limiter": RateLimiter(settings.rate_limit_per_minute),
                "breaker": CostCircuitBreaker(settings.monthly_cost_cap, SqliteSpendLedger(db_path)),
            }
        gateway = EnrichmentGateway(backend, settings, retry_policy=retry_policy, **gateway_kwargs)

        dispatcher = AlertDispatcher(
            SnsBroadcastPublisher(region=config.broadcast.region),
            push_backend=push_backend,
            registry=registry,
            retry_policy=retry_policy,
            max_parallel_devices=config.dispatch.max_parallel_devices,
            success_policy=config.dispatch.success_policy
        )

        return cls(
            config,
            cost_source or CostExplorerSource(),
            ThresholdEvaluator(config.monitor.min_service_cost, config.monitor.top_services),
            gateway,
            dispatcher,
            retry_policy=retry_policy,
            detect_anomalies=detect_anomalies
        )
