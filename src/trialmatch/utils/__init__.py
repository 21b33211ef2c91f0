"""Utility helpers for trialmatch."""

from trialmatch.utils.logging_config import get_logger

__all__ = ["get_logger"]
