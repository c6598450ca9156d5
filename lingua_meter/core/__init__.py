"""
Core modules for Lingua Meter.

This package contains pricing, billing periods, entitlement resolution,
the usage ledger and subscription reconciliation.
"""
