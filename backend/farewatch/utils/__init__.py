"""Utility modules for farewatch."""

from farewatch.utils.scoring import clamp_unit

__all__ = ["clamp_unit"]
