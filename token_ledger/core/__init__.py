"""
Core modules for token-ledger.

This package contains pricing, session tracking, summary caching and
transcript backfill.
"""
