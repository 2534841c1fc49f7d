"""
AI enrichment of cost analyses.

The gateway and its deterministic fallbacks.
"""

from .gateway import EnrichmentGateway, fallback_analysis

__all__ = ["EnrichmentGateway", "fallback_analysis"]
