"""
Core modules for the impact ledger.

This package contains token counting, pricing, the impact calculation,
milestone detection, the usage ledger and client-side reconciliation.
"""
