"""
SDK for Lingua Meter.

Entitlement provider clients and the metered OpenAI wrapper.
"""

from .openai_client import MeteredOpenAI
from .providers import (
    EntitlementProvider,
    ProductPackage,
    RevenueCatProvider,
    RuntimeMode,
    SimulatedEntitlementProvider,
    create_provider,
)

__all__ = [
    "EntitlementProvider",
    "MeteredOpenAI",
    "ProductPackage",
    "RevenueCatProvider",
    "RuntimeMode",
    "SimulatedEntitlementProvider",
    "create_provider",
]
