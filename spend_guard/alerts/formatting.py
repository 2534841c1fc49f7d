"""
Alert message and push payload formatting.

Renders one threshold breach for every channel: the long-form text used
for email, a short SMS line, the broadcast subject and the APNS payload.
Push payloads are size-checked here, before any send is attempted.
"""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.errors import ValidationError
from ..core.models import AlertContext, AlertLevel, CostAnalysis

# APNS rejects payloads above this many bytes.
MAX_PAYLOAD_BYTES = 4096

PUSH_TITLE = "AWS Spend Alert"
CRITICAL_SUBTITLE = "Critical Budget Exceeded"
WARNING_SUBTITLE = "Budget Threshold Exceeded"
CRITICAL_SOUND = "critical-alert.caf"
DEFAULT_SOUND = "default"


def alert_subject(context: AlertContext) -> str:
    return f"AWS Spend Alert: ${context.exceed_amount:.2f} over budget"


def _format_period(analysis: CostAnalysis) -> str:
    return f"{analysis.period.start:%b %d, %Y} - {analysis.period.end:%b %d, %Y}"


def format_message(
    analysis: CostAnalysis,
    context: AlertContext,
    generated_at: Optional[datetime] = None
) -> str:
    """Long-form alert text for email and the default broadcast message."""
    generated_at = generated_at or datetime.now(timezone.utc)
    lines: List[str] = [
        f"AWS Spend Alert - {context.alert_level.value}",
        "",
        "Your AWS spending has exceeded the configured threshold.",
        "",
        f"Current Spending: ${analysis.total_cost:.2f}",
        f"Threshold: ${context.threshold:.2f}",
        f"Over Budget: ${context.exceed_amount:.2f} ({context.percentage_over:.1f}%)",
        f"Projected Monthly: ${analysis.projected_monthly:.2f}",
        "",
        f"Period: {_format_period(analysis)}",
        "",
    ]

    if context.top_services:
        lines.append("Top Cost-Driving Services:")
        for index, service in enumerate(context.top_services, start=1):
            lines.append(
                f"{index}. {service.service_name}: ${service.cost:.2f} ({service.percentage:.1f}%)"
            )
        lines.append("")

    ai = context.ai_analysis
    if ai is not None:
        lines.append(f"AI Analysis (confidence {ai.confidence_score * 100:.0f}%):")
        lines.append(ai.summary)
        if ai.key_insights:
            lines.append("")
            lines.append("Key Insights:")
            for insight in ai.key_insights:
                lines.append(f"- {insight}")
        lines.append("")

    lines.extend([
        "Recommendations:",
        "- Review your AWS resources and usage patterns",
        "- Consider scaling down or terminating unused resources",
        "- Check for any unexpected charges or services",
        "",
        f"Alert generated at: {generated_at:%Y-%m-%d %H:%M:%S} UTC",
    ])
    return "\n".join(lines)


def format_sms_message(analysis: CostAnalysis, context: AlertContext) -> str:
    """One-line alert for SMS subscribers."""
    top_text = ""
    if context.top_services:
        top = context.top_services[0]
        top_text = f" Top service: {top.service_name} (${top.cost:.2f})"
    return (
        f"AWS Spend Alert: ${analysis.total_cost:.2f} spent "
        f"(over ${context.threshold:.2f} threshold by ${context.exceed_amount:.2f})."
        f"{top_text} Projected monthly: ${analysis.projected_monthly:.2f}"
    )


@dataclass(frozen=True)
class BroadcastMessage:
    """Topic publish request: default text plus per-protocol renditions."""
    subject: str
    default: str
    protocol_messages: Dict[str, str]


def build_broadcast_message(analysis: CostAnalysis, context: AlertContext) -> BroadcastMessage:
    message = format_message(analysis, context)
    return BroadcastMessage(
        subject=alert_subject(context),
        default=message,
        protocol_messages={
            "default": message,
            "email": message,
            "sms": format_sms_message(analysis, context),
        }
    )


@dataclass(frozen=True)
class NotificationPayload:
    """APNS payload with spend details for the app."""
    title: str
    body: str
    subtitle: Optional[str]
    badge: int
    sound: str
    content_available: int
    spend_amount: float
    threshold: float
    exceed_amount: float
    top_service: str
    alert_id: str

    def to_dict(self) -> Dict[str, Any]:
        alert: Dict[str, Any] = {"title": self.title, "body": self.body}
        if self.subtitle:
            alert["subtitle"] = self.subtitle
        return {
            "aps": {
                "alert": alert,
                "badge": self.badge,
                "sound": self.sound,
                "content-available": self.content_available,
            },
            "customData": {
                "spendAmount": self.spend_amount,
                "threshold": self.threshold,
                "exceedAmount": self.exceed_amount,
                "topService": self.top_service,
                "alertId": self.alert_id,
            },
        }

    def serialize(self) -> str:
        """Compact JSON wire form.

        Raises:
            ValidationError: If the encoded payload exceeds 4096 bytes
        """
        encoded = json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
        size = len(encoded.encode("utf-8"))
        if size > MAX_PAYLOAD_BYTES:
            raise ValidationError(
                f"Push payload is {size} bytes, exceeding the {MAX_PAYLOAD_BYTES}-byte limit"
            )
        return encoded


def new_alert_id() -> str:
    return f"spend-alert-{uuid.uuid4().hex}"


def format_push_payload(
    analysis: CostAnalysis,
    context: AlertContext,
    alert_id: Optional[str] = None
) -> NotificationPayload:
    """Build and size-check the push payload for this alert.

    Raises:
        ValidationError: If the payload would exceed 4096 bytes
    """
    critical = context.alert_level == AlertLevel.CRITICAL
    payload = NotificationPayload(
        title=PUSH_TITLE,
        body=f"${analysis.total_cost:.2f} spent - ${context.exceed_amount:.2f} over budget",
        subtitle=CRITICAL_SUBTITLE if critical else WARNING_SUBTITLE,
        badge=1,
        sound=CRITICAL_SOUND if critical else DEFAULT_SOUND,
        content_available=1,
        spend_amount=analysis.total_cost,
        threshold=context.threshold,
        exceed_amount=context.exceed_amount,
        top_service=context.top_service_name,
        alert_id=alert_id or new_alert_id()
    )
    payload.serialize()
    return payload
