"""Strategy implementations for the AMM volume bot."""

from .alternating_volume import describe as alternating_volume_describe

__all__ = ["alternating_volume_describe"]
