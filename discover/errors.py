"""Error taxonomy for Discover."""
from __future__ import annotations


class DiscoverError(RuntimeError):
    status = 500


class PreconditionError(DiscoverError):
    """The day is not eligible for Discover (no stops, or no mapped stop)."""

    status = 400


class MisconfiguredKeyError(DiscoverError):
    """Systemic credential problem; fatal for the whole invocation."""

    status = 500


class EnrichmentError(DiscoverError):
    pass


class EnrichmentQuotaError(EnrichmentError):
    """Free-text provider quota or rate limit hit. Treated as soft degradation."""


class RankingError(DiscoverError):
    pass
