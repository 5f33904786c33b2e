"""
PNG card handler.

The record lives base64-encoded in a ``chara`` (or ``ccv3``) text chunk;
extra assets ride along in ``chara-ext-asset_:<n>`` chunks referenced
from the record as ``__asset:<n>``.
"""

import base64
import json
import logging
from typing import List, Optional, Tuple

from cardsmith.config.models import ExportConfig, LimitsConfig

from ..asset_resolver import AssetAddressResolver, AssetSources
from ..errors import CardParseError
from ..export_validator import BUNDLE_RULES
from ..macro_processor import convert_card_macros, is_voxta_card, voxta_to_standard
from ..metadata_handler import PNGMetadataHandler, decode_chunk_text, is_png
from ..models import (
    Confidence,
    DecodedCard,
    DecodedContainer,
    DetectionResult,
    ExportAsset,
    ExportBundle,
    FormatType,
)
from ..normalization import upgrade_to_v3
from .base import FormatHandler, record_descriptors
from .json_handler import preserved_descriptors

logger = logging.getLogger(__name__)

RECORD_KEYWORDS = ("ccv3", "chara")  # Preference order
ASSET_CHUNK_PREFIX = "chara-ext-asset_:"
ASSET_URI_PREFIX = "__asset:"


class PNGHandler(FormatHandler):
    """Character cards embedded in PNG text chunks."""

    id = FormatType.PNG
    name = "PNG"
    extensions = (".png",)
    mime_types = ("image/png",)
    export_extension = "png"
    export_mimetype = "image/png"

    export_rules = BUNDLE_RULES

    def __init__(self, limits: Optional[LimitsConfig] = None, export: Optional[ExportConfig] = None):
        self.limits = limits or LimitsConfig()
        self.export_config = export or ExportConfig()

    def detect(self, data: bytes, filename: Optional[str] = None, mimetype: Optional[str] = None) -> DetectionResult:
        if is_png(data):
            return self.result(Confidence.HIGH, "png signature")
        if self.has_matching_extension(filename) or self.has_matching_mimetype(mimetype):
            return self.result(Confidence.MEDIUM, "png extension or mime type")
        return self.unknown()

    def check_size(self, data: bytes) -> List[str]:
        """Reject oversized input, warn on large input."""
        if len(data) > self.limits.max_png_bytes:
            raise CardParseError(
                f"PNG file too large ({len(data)} bytes, limit {self.limits.max_png_bytes})"
            )
        if len(data) > self.limits.warn_png_bytes:
            size_mb = len(data) / (1024 * 1024)
            return [f"Large PNG file ({size_mb:.1f} MB); import may be slow"]
        return []

    async def decode(
        self,
        data: bytes,
        filename: Optional[str],
        resolver: AssetAddressResolver,
    ) -> DecodedContainer:
        warnings = self.check_size(data)
        if not is_png(data):
            raise CardParseError("Not a PNG file")

        chunks = PNGMetadataHandler.read_text_chunks(data)
        record_chunk = None
        for keyword in RECORD_KEYWORDS:
            record_chunk = next((c for c in chunks if c.keyword.lower() == keyword), None)
            if record_chunk is not None:
                break
        if record_chunk is None:
            raise CardParseError("No character card data found in PNG")

        try:
            raw = json.loads(decode_chunk_text(record_chunk.text))
        except json.JSONDecodeError as e:
            raise CardParseError(f"Card data in '{record_chunk.keyword}' chunk is not valid JSON", e)

        card = self.canonicalize(raw, warnings=warnings)
        extra_chunks = [c for c in chunks if c.keyword.lower() not in RECORD_KEYWORDS]

        descriptors = record_descriptors(card, warnings)
        assets, asset_warnings = await resolver.resolve_all(
            descriptors, AssetSources(extra_chunks=extra_chunks)
        )
        warnings.extend(asset_warnings)

        logger.info(
            f"Decoded PNG card '{card['data'].get('name')}' "
            f"({len(extra_chunks)} extra chunk(s), {len(descriptors)} asset descriptor(s))"
        )
        return DecodedContainer(
            format=self.id,
            cards=[DecodedCard(
                card=card,
                assets=assets,
                container_image=PNGMetadataHandler.strip_text_chunks(data),
            )],
            warnings=warnings,
        )

    def base_image(self, bundle: ExportBundle) -> Tuple[bytes, Optional[ExportAsset]]:
        """
        Pick the carrier image.

        Returns:
            Tuple of (image bytes, the asset that became the image, if any)
        """
        main_icon = next(
            (a for a in bundle.assets if a.details.type == "icon" and a.details.is_main),
            None,
        )
        if bundle.original_image:
            # A main icon identical to the carrier does not need to travel twice
            if main_icon is not None and main_icon.data == bundle.original_image:
                return bundle.original_image, main_icon
            return bundle.original_image, None
        if main_icon is not None:
            return main_icon.data, main_icon

        config = self.export_config
        bundle.warnings.append("Card has no image; exported with a placeholder")
        placeholder = PNGMetadataHandler.create_placeholder(
            config.placeholder_width, config.placeholder_height, config.placeholder_color
        )
        return placeholder, None

    def encode(self, bundle: ExportBundle) -> bytes:
        image, carrier = self.base_image(bundle)
        image = PNGMetadataHandler.to_png(image)

        card = bundle.card
        if is_voxta_card(card):
            card = convert_card_macros(card, voxta_to_standard)

        carried = [a for a in bundle.assets if a is not carrier]
        preserved = preserved_descriptors(bundle.card, bundle.warnings)
        chunks: List[Tuple[str, str]] = []

        if carried or card.get("spec") == "chara_card_v3":
            card = upgrade_to_v3(card)
            descriptors = []
            for index, item in enumerate(carried):
                chunks.append((
                    f"{ASSET_CHUNK_PREFIX}{index}",
                    base64.b64encode(item.data).decode("ascii"),
                ))
                descriptors.append({
                    "type": item.details.type,
                    "uri": f"{ASSET_URI_PREFIX}{index}",
                    "name": item.details.name,
                    "ext": item.ext,
                    "is_main": item.details.is_main,
                    "tags": list(item.details.tags or []),
                })
            card["data"]["assets"] = descriptors + preserved

        record = json.dumps(card, ensure_ascii=False)
        encoded = base64.b64encode(record.encode("utf-8")).decode("ascii")
        logger.debug(f"Writing PNG card with {len(chunks)} asset chunk(s)")
        return PNGMetadataHandler.write_text_chunks(image, [("chara", encoded)] + chunks)
