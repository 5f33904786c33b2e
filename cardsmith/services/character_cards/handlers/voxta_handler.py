"""
Voxta package handler.

A ``.voxpkg`` is a ZIP holding one or more characters plus optional
scenarios, memory books and a root ``package.json``:

    Characters/<id>/character.json
    Characters/<id>/thumbnail.<ext>
    Characters/<id>/Assets/Avatars/<Folder>/<Emotion>_<State>_<Variant>.<ext>
    Characters/<id>/Assets/VoiceSamples/<file>
    Scenarios/<id>/scenario.json
    Books/<id>/book.json
"""

import json
import logging
import posixpath
import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

from cardsmith.config.models import ExportConfig, ZipSecurityConfig

from ..archive import (
    ArchiveReader,
    find_zip_start,
    open_archive,
    sanitize_archive_ext,
    unique_member_path,
    write_zip,
)
from ..asset_resolver import AssetAddressResolver, AssetSources
from ..errors import CardFormatError, CardParseError
from ..export_validator import BUNDLE_RULES
from ..models import (
    AssetDescriptor,
    Confidence,
    DecodedCard,
    DecodedCollection,
    DecodedContainer,
    DetectionResult,
    ExportAsset,
    ExportBundle,
    FormatType,
)
from ..tag_heuristics import PORTRAIT_OVERRIDE
from ..voxta_mapping import (
    build_character_scenario_map,
    ccv3_to_voxta,
    derived_id,
    lorebook_to_voxta_book,
    parse_asset_path,
    scenario_summary,
    voxta_to_ccv3,
)
from .base import FormatHandler
from .charx_handler import member_name

logger = logging.getLogger(__name__)

PACKAGE_MEMBER = "package.json"
RESOURCE_KIND_CHARACTER = 1
RESOURCE_KIND_SCENARIO = 3


def lists_character_entry(names: List[str]) -> bool:
    """Archive directory has a Characters/<id>/character.json member."""
    for name in names:
        parts = name.split("/")
        if len(parts) == 3 and parts[0] == "Characters" and parts[2] == "character.json":
            return True
    return False


@dataclass
class PackageCharacter:
    """One character folder read from a package."""
    folder_id: str
    record: Dict[str, Any]
    thumbnail_path: Optional[str] = None
    asset_paths: List[str] = field(default_factory=list)


def split_folders(names: List[str]) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, List[str]]]:
    """
    Group member names by top-level folder and id.

    Returns:
        Tuple of ({kind: {id: record_member}}, {"<kind>/<id>": [members...]})
    """
    records: Dict[str, Dict[str, Any]] = {"Characters": {}, "Scenarios": {}, "Books": {}}
    members: Dict[str, List[str]] = {}
    record_files = {"Characters": "character.json", "Scenarios": "scenario.json", "Books": "book.json"}

    for name in names:
        parts = name.split("/")
        if len(parts) < 3 or parts[0] not in records:
            continue
        kind, folder_id = parts[0], parts[1]
        members.setdefault(f"{kind}/{folder_id}", []).append(name)
        if len(parts) == 3 and parts[2] == record_files[kind]:
            records[kind][folder_id] = name

    return records, members


def strip_double_extension(name: str, ext: str) -> str:
    if ext and name.lower().endswith(f".{ext.lower()}"):
        return name[: -(len(ext) + 1)]
    return name


class VoxtaHandler(FormatHandler):
    """Voxta packages (.voxpkg)."""

    id = FormatType.VOXTA
    name = "Voxta"
    extensions = (".voxpkg",)
    mime_types = ("application/x-voxpkg",)
    export_extension = "voxpkg"
    export_mimetype = "application/zip"

    export_rules = BUNDLE_RULES
    adds_virtual_main_icon = True
    optimizes_media = True
    supports_collections = True

    def __init__(self, zip_limits: Optional[ZipSecurityConfig] = None, export: Optional[ExportConfig] = None):
        self.zip_limits = zip_limits or ZipSecurityConfig()
        self.export_config = export or ExportConfig()

    def detect(self, data: bytes, filename: Optional[str] = None, mimetype: Optional[str] = None) -> DetectionResult:
        start = find_zip_start(data)
        if start < 0:
            return self.unknown()
        if self.has_matching_extension(filename):
            return self.result(Confidence.HIGH, "zip with .voxpkg extension")
        if filename and filename.lower().endswith(".charx"):
            return self.unknown()

        try:
            with zipfile.ZipFile(BytesIO(data)) as zf:
                names = zf.namelist()
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError):
            return self.unknown()

        if lists_character_entry(names):
            return self.result(Confidence.HIGH, "zip lists Characters/<id>/character.json")
        return self.unknown()

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    @staticmethod
    def _read_json(reader: ArchiveReader, name: str) -> Dict[str, Any]:
        try:
            value = json.loads(reader.read_text(name))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CardParseError(f"{name} is not valid JSON", e)
        if not isinstance(value, dict):
            raise CardParseError(f"{name} does not contain a JSON object")
        return value

    @staticmethod
    def _thumbnail_member(members: List[str], prefix: str) -> Optional[str]:
        for name in members:
            if posixpath.dirname(name) == prefix and posixpath.basename(name).lower().startswith("thumbnail."):
                return name
        return None

    async def decode(
        self,
        data: bytes,
        filename: Optional[str],
        resolver: AssetAddressResolver,
    ) -> DecodedContainer:
        with open_archive(data, self.zip_limits) as reader:
            warnings = list(reader.warnings)
            records, members = split_folders(reader.names())

            package_meta = None
            package_member = reader.find(PACKAGE_MEMBER)
            if package_member is not None:
                package_meta = self._read_json(reader, package_member)

            books = [self._read_json(reader, name) for name in records["Books"].values()]
            scenarios = [
                (folder_id, self._read_json(reader, name))
                for folder_id, name in records["Scenarios"].items()
            ]

            characters = []
            for folder_id, name in records["Characters"].items():
                folder = f"Characters/{folder_id}"
                folder_members = members.get(folder, [])
                characters.append(PackageCharacter(
                    folder_id=folder_id,
                    record=self._read_json(reader, name),
                    thumbnail_path=self._thumbnail_member(folder_members, folder),
                    asset_paths=[m for m in folder_members if m.startswith(f"{folder}/Assets/")],
                ))

            if not characters:
                raise CardParseError("No characters found in Voxta package")

            cards = []
            for character in characters:
                decoded = await self._decode_character(character, books, reader, resolver)
                warnings.extend(decoded.warnings)
                cards.append(decoded)

            collection = None
            if len(characters) > 1 or package_meta is not None or scenarios:
                collection = self._build_collection(characters, scenarios, package_meta, reader, cards)

        logger.info(
            f"Decoded Voxta package: {len(cards)} character(s), {len(scenarios)} scenario(s), "
            f"{len(books)} book(s)"
        )
        return DecodedContainer(format=self.id, cards=cards, collection=collection, warnings=warnings)

    async def _decode_character(
        self,
        character: PackageCharacter,
        books: List[Dict[str, Any]],
        reader: ArchiveReader,
        resolver: AssetAddressResolver,
    ) -> DecodedCard:
        card = self.canonicalize(voxta_to_ccv3(character.record, books), default_spec="v3")

        descriptors: List[AssetDescriptor] = []
        structural: List[List[str]] = []

        if character.thumbnail_path:
            stem, ext = posixpath.splitext(posixpath.basename(character.thumbnail_path))
            descriptors.append(AssetDescriptor(
                type="icon",
                uri=character.thumbnail_path,
                name="main",
                ext=sanitize_archive_ext(ext),
                order_index=0,
                is_main=True,
            ))
            structural.append([])

        for path in character.asset_paths:
            asset_type, tags = parse_asset_path(path)
            stem, ext = posixpath.splitext(posixpath.basename(path))
            descriptors.append(AssetDescriptor(
                type=asset_type,
                uri=path,
                name=stem,
                ext=sanitize_archive_ext(ext),
                order_index=len(descriptors),
            ))
            structural.append(tags)

        assets, warnings = await resolver.resolve_all(descriptors, AssetSources(archive=reader))
        for asset, tags in zip(assets, structural):
            asset.tags = list(tags)

        return DecodedCard(card=card, assets=assets, meta_tags=["voxta"], warnings=warnings)

    def _build_collection(
        self,
        characters: List[PackageCharacter],
        scenarios: List[Tuple[str, Dict[str, Any]]],
        package_meta: Optional[Dict[str, Any]],
        reader: ArchiveReader,
        cards: List[DecodedCard],
    ) -> DecodedCollection:
        records = [c.record for c in characters]
        scenario_records = [s for _, s in scenarios]
        scenario_map = build_character_scenario_map(records, scenario_records)

        member_list = []
        for order, record in enumerate(records):
            entry = {
                "voxtaCharacterId": record.get("Id"),
                "name": record.get("Name") or "Unknown",
                "order": order,
            }
            scenario_ids = scenario_map.get(record.get("Id"), [])
            if scenario_ids:
                entry["scenarioIds"] = scenario_ids
            member_list.append(entry)

        meta = package_meta or {}
        fallback_name = f"{member_list[0]['name']} Collection" if member_list else "Voxta Collection"
        data = {
            "name": meta.get("Name") or fallback_name,
            "description": meta.get("Description") or f"Collection of {len(member_list)} characters",
            "version": meta.get("Version"),
            "creator": meta.get("Creator"),
            "voxtaPackageId": meta.get("Id"),
            "members": member_list,
            "scenarios": [scenario_summary(s, i) for i, s in enumerate(scenario_records)] or None,
            "explicitContent": meta.get("ExplicitContent"),
            "dateCreated": meta.get("DateCreated"),
            "dateModified": meta.get("DateModified"),
        }
        data = {k: v for k, v in data.items() if v is not None}

        return DecodedCollection(
            name=data["name"],
            data=data,
            thumbnail=self._collection_thumbnail(meta, characters, scenarios, reader, cards),
        )

    def _collection_thumbnail(
        self,
        meta: Dict[str, Any],
        characters: List[PackageCharacter],
        scenarios: List[Tuple[str, Dict[str, Any]]],
        reader: ArchiveReader,
        cards: List[DecodedCard],
    ) -> Optional[bytes]:
        resource = meta.get("ThumbnailResource") or {}
        kind, resource_id = resource.get("Kind"), resource.get("Id")

        if kind == RESOURCE_KIND_SCENARIO:
            for folder_id, scenario in scenarios:
                if resource_id in (folder_id, scenario.get("Id")):
                    folder = f"Scenarios/{folder_id}"
                    member = self._thumbnail_member(
                        [n for n in reader.names() if n.startswith(f"{folder}/")], folder
                    )
                    if member:
                        return reader.read(member)

        if kind == RESOURCE_KIND_CHARACTER:
            for character, card in zip(characters, cards):
                if resource_id in (character.folder_id, character.record.get("Id")):
                    thumbnail = self._main_buffer(card)
                    if thumbnail:
                        return thumbnail

        return self._main_buffer(cards[0]) if cards else None

    @staticmethod
    def _main_buffer(card: DecodedCard) -> Optional[bytes]:
        for asset in card.assets:
            if asset.descriptor.is_main and asset.buffer:
                return asset.buffer
        return None

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @staticmethod
    def pick_thumbnail(assets: List[ExportAsset]) -> Optional[ExportAsset]:
        """Main icon, then a portrait-override icon, then an icon named main, then the first icon."""
        icons = [a for a in assets if a.details.type == "icon"]
        for asset in icons:
            if asset.details.is_main:
                return asset
        for asset in icons:
            if PORTRAIT_OVERRIDE in (asset.details.tags or []):
                return asset
        for asset in icons:
            if asset.details.name == "main":
                return asset
        return icons[0] if icons else None

    @staticmethod
    def asset_folder(asset: ExportAsset) -> str:
        tags = asset.details.tags or []
        if asset.details.type == "sound" or "voice" in tags:
            return "Assets/VoiceSamples"
        if asset.details.type in ("icon", "emotion"):
            return "Assets/Avatars/Default"
        return "Assets/Misc"

    def character_entries(self, bundle: ExportBundle, package_id: Optional[str] = None) -> Tuple[str, List[Tuple[str, bytes]]]:
        """
        Archive members for one character.

        Returns:
            Tuple of (character id, [(member name, bytes), ...])
        """
        data = bundle.card.get("data") or {}
        voxta_ext = (data.get("extensions") or {}).get("voxta") or {}
        character_id = voxta_ext.get("id") or derived_id(bundle.card_id, "character")
        package_id = package_id or voxta_ext.get("packageId") or derived_id(bundle.card_id, "package")
        folder = f"Characters/{character_id}"

        entries: List[Tuple[str, bytes]] = []
        book_ids: List[str] = []

        lorebook = data.get("character_book")
        if isinstance(lorebook, dict) and lorebook.get("entries"):
            book_ext = (lorebook.get("extensions") or {}).get("voxta") or {}
            book_id = book_ext.get("id") or derived_id(bundle.card_id, "book")
            book = lorebook_to_voxta_book(lorebook, book_id, package_id, f"{data.get('name') or 'Character'} Lorebook")
            entries.append((f"Books/{book_id}/book.json", json.dumps(book, indent=2, ensure_ascii=False).encode("utf-8")))
            book_ids.append(book_id)

        character = ccv3_to_voxta(bundle.card, character_id, package_id, book_ids, now=bundle.updated_at)
        entries.insert(0, (f"{folder}/character.json", json.dumps(character, indent=2, ensure_ascii=False).encode("utf-8")))

        thumbnail = self.pick_thumbnail(bundle.assets)
        if thumbnail is not None:
            entries.append((f"{folder}/thumbnail.{sanitize_archive_ext(thumbnail.ext)}", thumbnail.data))

        taken = {name for name, _ in entries}
        for asset in bundle.assets:
            if asset is thumbnail:
                continue
            ext = sanitize_archive_ext(asset.ext)
            stem = member_name(strip_double_extension(asset.details.name, ext))
            wanted = f"{folder}/{self.asset_folder(asset)}/{stem}.{ext}"
            path = unique_member_path(wanted, taken)
            if path != wanted:
                logger.warning(f"Archive member {wanted} already used; writing {path}")
            entries.append((path, asset.data))

        return character_id, entries

    def package_record(
        self,
        package_id: str,
        name: str,
        entry_id: str,
        data: Dict[str, Any],
        stamp: Optional[str],
    ) -> Dict[str, Any]:
        record = {
            "$type": "package",
            "Id": package_id,
            "Name": name,
            "Version": data.get("version") or data.get("character_version") or "1.0.0",
            "Description": data.get("description") or "",
            "Creator": data.get("creator") or "",
            "EntryResource": {"Kind": RESOURCE_KIND_CHARACTER, "Id": entry_id},
            "ThumbnailResource": {"Kind": RESOURCE_KIND_CHARACTER, "Id": entry_id},
        }
        if stamp:
            record["DateCreated"] = data.get("dateCreated") or stamp
            record["DateModified"] = stamp
        return record

    def encode(self, bundle: ExportBundle) -> bytes:
        character_id, entries = self.character_entries(bundle)

        if self.export_config.include_package_json:
            data = bundle.card.get("data") or {}
            voxta_ext = (data.get("extensions") or {}).get("voxta") or {}
            package_id = voxta_ext.get("packageId") or derived_id(bundle.card_id, "package")
            record = self.package_record(package_id, data.get("name") or bundle.name, character_id, data, bundle.updated_at)
            entries.insert(0, (PACKAGE_MEMBER, json.dumps(record, indent=2, ensure_ascii=False).encode("utf-8")))

        logger.debug(f"Writing Voxta package with {len(entries)} member(s)")
        return write_zip(entries, compression_level=self.export_config.compression_level)

    def encode_collection(self, collection: ExportBundle, members: List[ExportBundle]) -> bytes:
        """Encode a collection card and its member characters as one package."""
        data = collection.card.get("data") or {}
        package_id = data.get("voxtaPackageId") or derived_id(collection.card_id, "package")

        entries: List[Tuple[str, bytes]] = []
        character_ids = []
        for member in members:
            character_id, member_entries = self.character_entries(member, package_id)
            character_ids.append(character_id)
            entries.extend(member_entries)

        if not character_ids:
            raise CardFormatError("Collection has no member cards to export")

        record = self.package_record(package_id, collection.name, character_ids[0], data, collection.updated_at)
        entries.insert(0, (PACKAGE_MEMBER, json.dumps(record, indent=2, ensure_ascii=False).encode("utf-8")))

        logger.debug(f"Writing Voxta collection with {len(members)} character(s)")
        return write_zip(entries, compression_level=self.export_config.compression_level)
