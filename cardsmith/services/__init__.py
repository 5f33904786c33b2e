"""Business logic services."""

from .asset_storage import AssetStorage, AssetStorageError
from .conversion_service import CardConversionService

__all__ = [
    'AssetStorage',
    'AssetStorageError',
    'CardConversionService',
]
