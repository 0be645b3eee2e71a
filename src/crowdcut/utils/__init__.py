"""Utility functions for CrowdCut."""

from crowdcut.utils.logging import format_duration, get_logger

__all__ = ["format_duration", "get_logger"]
