"""
Mining slots engine.

Time-proportional earnings on investment slots: accrual, claims, expiration,
auto-claim, caching and live updates.
"""

__version__ = "0.1.0"
