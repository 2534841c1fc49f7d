"""
Backends for Spend Guard.

Ports for the external collaborators and their implementations.
"""

from .base import (
    BroadcastPublisher,
    CostSource,
    DeviceStore,
    EndpointAttributes,
    InferenceBackend,
    InferenceParams,
    InferenceResponse,
    PlatformApplicationStatus,
    PushBackend,
)

__all__ = [
    "BroadcastPublisher",
    "CostSource",
    "DeviceStore",
    "EndpointAttributes",
    "InferenceBackend",
    "InferenceParams",
    "InferenceResponse",
    "PlatformApplicationStatus",
    "PushBackend",
]
