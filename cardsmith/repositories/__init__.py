"""Repository pattern for database operations."""

from .card_repository import CardRepository

__all__ = [
    "CardRepository",
]
