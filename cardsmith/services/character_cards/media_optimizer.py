"""
Media optimization step for archive exports.

The exporter hands every asset to an optimizer before it is written into
an archive. The default leaves bytes untouched; ``WebpOptimizer``
re-encodes still images as WebP and downsizes oversized ones.
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional
from PIL import Image, UnidentifiedImageError

from cardsmith.config.models import OptimizationConfig

logger = logging.getLogger(__name__)

OPTIMIZABLE_MIMETYPES = {"image/png", "image/jpeg", "image/webp"}


@dataclass
class OptimizedMedia:
    data: bytes
    mimetype: str
    ext: str


class MediaOptimizer:
    """Pass-through optimizer."""

    def optimize(self, data: bytes, mimetype: str, ext: str, asset_type: str, tags=()) -> OptimizedMedia:
        return OptimizedMedia(data=data, mimetype=mimetype, ext=ext)


class WebpOptimizer(MediaOptimizer):
    """
    Re-encode still images as WebP.

    Animated images, audio and video pass through unchanged, as do asset
    types outside ``included_asset_types``. A result larger than the
    input is discarded.
    """

    def __init__(self, config: OptimizationConfig):
        self.config = config

    def optimize(self, data: bytes, mimetype: str, ext: str, asset_type: str, tags=()) -> OptimizedMedia:
        original = OptimizedMedia(data=data, mimetype=mimetype, ext=ext)

        if asset_type not in self.config.included_asset_types:
            return original
        if mimetype not in OPTIMIZABLE_MIMETYPES or "animated" in tags:
            return original

        try:
            with Image.open(BytesIO(data)) as image:
                if getattr(image, "is_animated", False):
                    return original
                image.load()
                converted = self._resize(image)
                if converted.mode not in ("RGB", "RGBA"):
                    converted = converted.convert("RGBA")

                output = BytesIO()
                if self.config.convert_to_webp:
                    converted.save(output, format="WEBP", quality=self.config.webp_quality, method=6)
                    result = OptimizedMedia(output.getvalue(), "image/webp", "webp")
                else:
                    fmt = "PNG" if mimetype == "image/png" else "JPEG" if mimetype == "image/jpeg" else "WEBP"
                    if fmt == "JPEG":
                        converted = converted.convert("RGB")
                    converted.save(output, format=fmt, optimize=True)
                    result = OptimizedMedia(output.getvalue(), mimetype, ext)
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Skipping optimization for {asset_type} asset: {e}")
            return original

        if len(result.data) >= len(data):
            return original

        logger.debug(f"Optimized {asset_type} asset: {len(data)} -> {len(result.data)} bytes")
        return result

    def _resize(self, image: Image.Image) -> Image.Image:
        width, height = image.size
        max_pixels = self.config.max_megapixels * 1_000_000
        if width * height <= max_pixels:
            return image.copy()

        scale = (max_pixels / float(width * height)) ** 0.5
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        return image.resize(size, Image.Resampling.LANCZOS)


def create_optimizer(config: Optional[OptimizationConfig]) -> MediaOptimizer:
    """Optimizer for the configured policy."""
    if config is not None and config.enabled:
        return WebpOptimizer(config)
    return MediaOptimizer()
