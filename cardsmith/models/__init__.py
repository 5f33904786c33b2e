"""Models package for Cardsmith."""

from .card import Card, Asset, CardAsset

__all__ = [
    "Card",
    "Asset",
    "CardAsset",
]
