"""
Shared utilities for the audio diagnostics API.

This module contains helpers used across the engine and the HTTP layer.
"""
from .logger import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
