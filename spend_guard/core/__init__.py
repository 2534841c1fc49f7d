"""
Core modules for Spend Guard.

This package contains the resilience primitives (retry, rate limiting,
cost circuit breaking), the cost domain records, threshold evaluation,
statistical baselines and anomaly detection, and model pricing.
"""
