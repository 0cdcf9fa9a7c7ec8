"""
Exception types raised by cardscan.
"""

from __future__ import annotations


class CardScanError(Exception):
    """Base class for cardscan errors."""


class InvalidImageError(CardScanError, ValueError):
    """The raster is degenerate or too small to hold even one card."""


class VisionError(CardScanError):
    """The external vision service could not produce a usable answer."""


class DetectionCancelled(CardScanError):
    """The caller cancelled this detection run."""
