"""
Formatting utilities for CLI output.
"""

from typing import Optional


def format_currency(amount: Optional[int], currency: str = "GBP") -> str:
    """
    Format an integer amount as currency.

    Args:
        amount: The amount in whole units (e.g., pounds, not pence), or None.
        currency: Currency code (default GBP).

    Returns:
        Formatted currency string, or "n/a" when the amount is unknown.
    """
    if amount is None:
        return "n/a"
    symbols = {
        "GBP": "£",
        "USD": "$",
        "EUR": "€",
    }
    symbol = symbols.get(currency, currency + " ")
    return f"{symbol}{amount:,}"


def format_percent(value: Optional[float], decimals: int = 1) -> str:
    """Format a number as a percentage ("n/a" for None)."""
    if value is None:
        return "n/a"
    return f"{value:.{decimals}f}%"


def format_score(score: Optional[int], classification: Optional[str] = None) -> str:
    if score is None:
        return "unscored"
    label = classification or "licensed"
    return f"{score:>3}/100 {label}"


def format_duration(milliseconds: int) -> str:
    if milliseconds < 1000:
        return f"{milliseconds}ms"
    return f"{milliseconds / 1000:.1f}s"
