"""CleanBox: Gmail promo and package-tracking scan pipeline."""
from __future__ import annotations

__version__ = "0.1.0"
