"""
Prompt construction and response parsing for enrichment calls.

Models are asked for a JSON document; the first JSON object found in the
reply is used and malformed entries are skipped rather than failing the
whole response.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from ..core.anomaly import Anomaly, AnomalySeverity
from ..core.models import AIAnalysisResult, CostAnalysis
from .recommendations import (
    ImplementationComplexity,
    Recommendation,
    RecommendationCategory,
    RecommendationPriority,
)

PARSE_FAILURE_CONFIDENCE = 0.1
MAX_PROMPT_SERVICES = 10


def _service_lines(analysis: CostAnalysis, limit: Optional[int] = None) -> str:
    ranked = analysis.ranked_services()
    if limit is not None:
        ranked = ranked[:limit]
    return "\n".join(f"{service}: ${cost:.2f}" for service, cost in ranked)


def build_analysis_prompt(analysis: CostAnalysis) -> str:
    return f"""Analyze the following AWS cost data and provide insights:

Current Month-to-Date Cost: ${analysis.total_cost:.2f}
Projected Monthly Cost: ${analysis.projected_monthly:.2f}
Period: {analysis.period.start.isoformat()} to {analysis.period.end.isoformat()}

Top Services by Cost:
{_service_lines(analysis, MAX_PROMPT_SERVICES)}

Please provide:
1. A concise summary of spending patterns (2-3 sentences)
2. Key insights about cost drivers and trends (3-5 bullet points)
3. Confidence score (0.0 to 1.0) for this analysis

Format your response as JSON:
{{
  "summary": "Brief summary of spending patterns",
  "keyInsights": ["Insight 1", "Insight 2", "Insight 3"],
  "confidenceScore": 0.85
}}

Ensure the response is valid JSON and confidence score is between 0.0 and 1.0."""


def build_anomaly_prompt(current: CostAnalysis, historical: Sequence[CostAnalysis]) -> str:
    prompt = f"""Analyze the following AWS cost data for anomalies:

Current Cost: ${current.total_cost:.2f}
Projected Monthly: ${current.projected_monthly:.2f}

Service Breakdown:
{_service_lines(current)}
"""
    if historical:
        prompt += "\nHistorical Data for Comparison:"
        for index, period in enumerate(historical, start=1):
            prompt += f"\nPeriod {index}: ${period.total_cost:.2f}"
        prompt += "\n"

    prompt += """
Identify any spending anomalies and respond in JSON format:
{
  "anomaliesDetected": true,
  "anomalies": [
    {
      "service": "Service Name",
      "severity": "LOW/MEDIUM/HIGH",
      "description": "Description of anomaly",
      "confidenceScore": 0.85,
      "suggestedAction": "Recommended action"
    }
  ]
}"""
    return prompt


def build_recommendation_prompt(analysis: CostAnalysis) -> str:
    return f"""Analyze the following AWS cost data and provide optimization recommendations:

Total Cost: ${analysis.total_cost:.2f}
Projected Monthly: ${analysis.projected_monthly:.2f}

Service Costs:
{_service_lines(analysis)}

Provide cost optimization recommendations in JSON format:
{{
  "recommendations": [
    {{
      "category": "RIGHTSIZING/RESERVED_INSTANCES/SPOT_INSTANCES/STORAGE_OPTIMIZATION/OTHER",
      "service": "Service Name",
      "description": "Detailed recommendation",
      "estimatedSavings": 100.50,
      "priority": "LOW/MEDIUM/HIGH",
      "implementationComplexity": "EASY/MEDIUM/COMPLEX"
    }}
  ]
}}"""


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the outermost JSON object embedded in ``text``.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    if not text:
        raise ValueError("empty response")
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("no JSON object in response")
    parsed = json.loads(text[start:end + 1])
    if not isinstance(parsed, dict):
        raise ValueError("response JSON is not an object")
    return parsed


def parse_analysis_response(
    text: str,
    model_used: str,
    processing_cost: Optional[float] = None
) -> AIAnalysisResult:
    """Build an AIAnalysisResult; unparseable replies give a 0.1 confidence result."""
    try:
        parsed = extract_json_object(text)
        summary = parsed.get("summary")
        insights = parsed.get("keyInsights")
        confidence = parsed.get("confidenceScore")
        if not summary or not isinstance(insights, list) or not isinstance(confidence, (int, float)):
            raise ValueError("response is missing summary, keyInsights or confidenceScore")
        return AIAnalysisResult(
            summary=str(summary),
            key_insights=tuple(str(insight) for insight in insights),
            confidence_score=max(0.0, min(1.0, float(confidence))),
            model_used=model_used,
            processing_cost=processing_cost
        )
    except ValueError as e:
        logger.error(f"Failed to parse analysis response: {e}")
        return AIAnalysisResult(
            summary="AI analysis parsing failed - using fallback response",
            key_insights=("Unable to parse AI insights",),
            confidence_score=PARSE_FAILURE_CONFIDENCE,
            model_used=model_used,
            processing_cost=processing_cost
        )


def parse_anomaly_response(text: str) -> List[Anomaly]:
    """Anomalies listed in the reply; empty when the reply is unparseable."""
    try:
        parsed = extract_json_object(text)
    except ValueError as e:
        logger.error(f"Failed to parse anomaly response: {e}")
        return []

    entries = parsed.get("anomalies")
    if not isinstance(entries, list):
        return []

    anomalies: List[Anomaly] = []
    for entry in entries:
        try:
            anomalies.append(Anomaly(
                service=str(entry["service"]),
                severity=AnomalySeverity(str(entry["severity"]).upper()),
                description=str(entry.get("description", "")),
                confidence_score=max(0.0, min(1.0, float(entry.get("confidenceScore", 0.5)))),
                suggested_action=str(entry.get("suggestedAction", ""))
            ))
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.debug(f"Skipping malformed anomaly entry {entry!r}: {e}")
    return anomalies


def parse_recommendation_response(text: str) -> List[Recommendation]:
    """Recommendations listed in the reply; empty when the reply is unparseable."""
    try:
        parsed = extract_json_object(text)
    except ValueError as e:
        logger.error(f"Failed to parse recommendation response: {e}")
        return []

    entries = parsed.get("recommendations")
    if not isinstance(entries, list):
        return []

    recommendations: List[Recommendation] = []
    for entry in entries:
        try:
            savings = entry.get("estimatedSavings")
            savings = float(savings) if savings is not None else None
            recommendations.append(Recommendation(
                category=RecommendationCategory(str(entry.get("category", "OTHER")).upper()),
                service=str(entry["service"]),
                description=str(entry.get("description", "")),
                priority=RecommendationPriority(str(entry.get("priority", "MEDIUM")).upper()),
                implementation_complexity=ImplementationComplexity(
                    str(entry.get("implementationComplexity", "MEDIUM")).upper()
                ),
                estimated_savings=savings if savings and savings > 0 else None
            ))
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.debug(f"Skipping malformed recommendation entry {entry!r}: {e}")
    return recommendations
