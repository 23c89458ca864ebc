"""
Utility modules for the enrichment pipeline.
"""

from .formatting import format_currency, format_duration, format_percent, format_score
from .config import Config

__all__ = ["format_currency", "format_duration", "format_percent", "format_score", "Config"]
