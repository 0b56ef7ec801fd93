"""
token-ledger: local token usage analytics.

Records every model call in an append-only event log and derives session
statistics, cached summaries and cross-session reports from it.
"""

__version__ = "0.1.0"
