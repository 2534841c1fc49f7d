"""
SDK for Spend Guard.

Inference backends built on vendor SDKs.
"""

from .openai_client import OpenAIInferenceBackend

__all__ = ["OpenAIInferenceBackend"]
