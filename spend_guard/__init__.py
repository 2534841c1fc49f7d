"""
Spend Guard.

Evaluates cloud spend against a threshold and alerts subscribers over
broadcast and per-device push, with rate-limited, cost-capped AI
enrichment of the alert.
"""

__version__ = "0.1.0"
