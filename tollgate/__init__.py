"""
Tollgate - Billing integrity service for Lemon Squeezy.

Applies subscription webhooks exactly once, meters pay-per-use actions back
to the provider exactly once, caps spend on the paid inference API with a
layered cost circuit breaker, and reconciles local billing state against the
provider on a schedule.

Example:
    >>> from tollgate import get_settings
    >>> settings = get_settings()
    >>> print(settings.cost_limits.daily)
"""

from tollgate.config import get_settings

__all__ = ["get_settings"]
