"""
Lingua Meter: usage metering and subscription entitlements for a
language-learning client.
"""

__version__ = "0.1.0"
