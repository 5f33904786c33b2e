"""
CHARX card handler.

A CHARX file is a ZIP with ``card.json`` at the root and assets stored as
members, referenced from ``data.assets`` with ``embeded://`` URIs.
"""

import json
import logging
import posixpath
import re
from typing import List, Optional

from cardsmith.config.models import ExportConfig, ZipSecurityConfig

from ..archive import (
    ArchiveReader,
    find_zip_start,
    is_zip,
    open_archive,
    sanitize_archive_ext,
    unique_member_path,
    write_zip,
)
from ..asset_resolver import ARCHIVE_SCHEME, AssetAddressResolver, AssetSources
from ..errors import CardParseError
from ..export_validator import ALL_RULES
from ..metadata_handler import is_png
from ..models import (
    ASSET_TYPES,
    AssetDescriptor,
    Confidence,
    DecodedCard,
    DecodedContainer,
    DetectionResult,
    ExportBundle,
    FormatType,
)
from ..normalization import upgrade_to_v3
from .base import FormatHandler, record_descriptors
from .json_handler import preserved_descriptors

logger = logging.getLogger(__name__)

CARD_MEMBER = "card.json"
IGNORED_PREFIXES = ("x_meta/",)
IGNORED_MEMBERS = ("module.risum",)

_UNSAFE_NAME_CHARS = re.compile(r"[\\/:*?\"<>|\x00-\x1f]")


def member_name(name: str) -> str:
    """Asset name made safe for use as one path segment."""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name).strip(". ")
    return cleaned or "asset"


def descriptors_from_members(reader: ArchiveReader) -> List[AssetDescriptor]:
    """
    Synthesize descriptors for archives whose card.json lists no assets.

    ``<type>/<name>.<ext>`` (optionally under ``assets/``) maps to a
    descriptor of that type; unknown folders become ``custom``.
    """
    descriptors = []
    for name in reader.names():
        lowered = name.lower()
        if lowered == CARD_MEMBER or lowered.startswith(IGNORED_PREFIXES) or lowered in IGNORED_MEMBERS:
            continue

        parts = name.split("/")
        if parts[0].lower() == "assets" and len(parts) > 1:
            parts = parts[1:]
        if len(parts) < 2:
            continue

        folder = parts[0].lower()
        stem, ext = posixpath.splitext(parts[-1])
        descriptors.append(AssetDescriptor(
            type=folder if folder in ASSET_TYPES else "custom",
            uri=f"{ARCHIVE_SCHEME}{name}",
            name=stem or parts[-1],
            ext=sanitize_archive_ext(ext),
            order_index=len(descriptors),
        ))
    return descriptors


class CharxHandler(FormatHandler):
    """CHARX archives (card.json plus embedded assets)."""

    id = FormatType.CHARX
    name = "CHARX"
    extensions = (".charx",)
    mime_types = ("application/x-charx",)
    export_extension = "charx"
    export_mimetype = "application/zip"

    export_rules = ALL_RULES
    adds_virtual_main_icon = True
    optimizes_media = True

    def __init__(self, zip_limits: Optional[ZipSecurityConfig] = None, export: Optional[ExportConfig] = None):
        self.zip_limits = zip_limits or ZipSecurityConfig()
        self.export_config = export or ExportConfig()

    def detect(self, data: bytes, filename: Optional[str] = None, mimetype: Optional[str] = None) -> DetectionResult:
        if is_zip(data):
            return self.result(Confidence.HIGH, "zip signature")
        if not is_png(data) and find_zip_start(data) > 0:
            return self.result(Confidence.HIGH, "self-extracting zip")
        if self.has_matching_extension(filename) or self.has_matching_mimetype(mimetype):
            return self.result(Confidence.MEDIUM, "charx extension")
        return self.unknown()

    async def decode(
        self,
        data: bytes,
        filename: Optional[str],
        resolver: AssetAddressResolver,
    ) -> DecodedContainer:
        with open_archive(data, self.zip_limits) as reader:
            warnings = list(reader.warnings)

            member = reader.find(CARD_MEMBER)
            if member is None:
                raise CardParseError("CHARX archive has no card.json")
            try:
                raw = json.loads(reader.read_text(member))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise CardParseError("card.json is not valid JSON", e)

            card = self.canonicalize(raw, default_spec="v3", warnings=warnings)

            listed = card["data"].get("assets")
            if listed:
                descriptors = record_descriptors(card, warnings)
            else:
                descriptors = descriptors_from_members(reader)
                if descriptors:
                    logger.info(f"card.json lists no assets; using {len(descriptors)} archive member(s)")

            assets, asset_warnings = await resolver.resolve_all(
                descriptors, AssetSources(archive=reader)
            )
            warnings.extend(asset_warnings)

        logger.info(f"Decoded CHARX card '{card['data'].get('name')}' with {len(assets)} asset(s)")
        return DecodedContainer(
            format=self.id,
            cards=[DecodedCard(card=card, assets=assets)],
            warnings=warnings,
        )

    def encode(self, bundle: ExportBundle) -> bytes:
        card = upgrade_to_v3(bundle.card)
        entries = []
        descriptors = []

        # The main icon owns icon/main.<ext>; other members are renamed around it
        main_item = next((i for i in bundle.assets if i.details.type == "icon" and i.details.is_main), None)
        taken = {CARD_MEMBER}
        if main_item is not None:
            taken.add(f"icon/main.{sanitize_archive_ext(main_item.ext)}")

        for item in bundle.assets:
            details = item.details
            ext = sanitize_archive_ext(item.ext)
            if item is main_item:
                path = f"icon/main.{ext}"
                name = "main"
            else:
                wanted = f"{member_name(details.type)}/{member_name(details.name)}.{ext}"
                path = unique_member_path(wanted, taken)
                name = details.name
                if path != wanted:
                    name = posixpath.splitext(posixpath.basename(path))[0]
                    logger.warning(f"Archive member {wanted} already used; writing {path}")

            entries.append((path, item.data))
            descriptor = {
                "type": details.type,
                "uri": f"{ARCHIVE_SCHEME}{path}",
                "name": name,
                "ext": ext,
            }
            if details.tags:
                descriptor["tags"] = list(details.tags)
            descriptors.append(descriptor)

        card["data"]["assets"] = descriptors + preserved_descriptors(bundle.card, bundle.warnings)
        record = json.dumps(card, indent=2, ensure_ascii=False).encode("utf-8")

        logger.debug(f"Writing CHARX with {len(entries)} asset member(s)")
        return write_zip(
            [(CARD_MEMBER, record)] + entries,
            compression_level=self.export_config.compression_level,
        )
