"""
Core modules for the credit ledger.

This package contains pricing, cost estimation, rate limiting and the
consumption engine that authorizes and settles metered requests.
"""
