"""
JSON card handler.

Plain ``.json`` cards, wrapped (``{spec, data}``) or flat legacy objects.
Assets can only travel inside the record as data URIs.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from cardsmith.config.models import ExportConfig, LimitsConfig
from cardsmith.services.asset_storage import STORAGE_URL_PREFIX

from ..asset_resolver import (
    REMOTE_PREFIXES,
    AssetAddressResolver,
    AssetSources,
    to_data_uri,
)
from ..errors import CardParseError
from ..export_validator import BUNDLE_RULES
from ..macro_processor import convert_card_macros, is_voxta_card, voxta_to_standard
from ..models import (
    Confidence,
    DecodedCard,
    DecodedContainer,
    DetectionResult,
    ExportBundle,
    FormatType,
)
from ..normalization import upgrade_to_v3
from .base import FormatHandler, record_descriptors

logger = logging.getLogger(__name__)

# Anchors for salvaging a card from malformed JSON, tried in order
RECOVERY_ANCHORS = (
    re.compile(r'"spec"\s*:\s*"chara_card_v3"'),
    re.compile(r'"spec"\s*:\s*"chara_card_v2"'),
    re.compile(r'"name"\s*:'),
)


def recover_json(text: str) -> Optional[Any]:
    """
    Best-effort parse of a card embedded in damaged text.

    Takes the last ``{`` before the first anchor match through the last
    ``}`` of the text and parses that slice.
    """
    end = text.rfind("}")
    if end == -1:
        return None

    for anchor in RECOVERY_ANCHORS:
        match = anchor.search(text)
        if not match:
            continue
        start = text.rfind("{", 0, match.start())
        if start == -1 or start >= end:
            continue
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            continue
    return None


def sniff_json(data: bytes) -> bool:
    """Leading ``{``/``[`` that parses as JSON."""
    head = data[:64].lstrip(b"\xef\xbb\xbf \t\r\n")
    if head[:1] not in (b"{", b"["):
        return False
    try:
        json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return False
    return True


def preserved_descriptors(card: Dict[str, Any], warnings: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """
    Remote/default descriptors kept on the record without bytes.

    Other references that never resolved to stored bytes cannot be
    written out; each one is named in ``warnings``.
    """
    data = card.get("data") if isinstance(card.get("data"), dict) else {}
    kept = []
    for descriptor in data.get("assets") or []:
        if not isinstance(descriptor, dict):
            continue
        uri = str(descriptor.get("uri") or "")
        if uri.lower().startswith(REMOTE_PREFIXES):
            kept.append(dict(descriptor))
        elif not uri.startswith(STORAGE_URL_PREFIX) and warnings is not None:
            warnings.append(
                f"Unresolved asset '{descriptor.get('name') or ''}' ({uri[:60]}) not included in export"
            )
    return kept


class JSONHandler(FormatHandler):
    """Character cards stored as bare JSON."""

    id = FormatType.JSON
    name = "JSON"
    extensions = (".json",)
    mime_types = ("application/json", "text/json")
    export_extension = "json"
    export_mimetype = "application/json"

    export_rules = BUNDLE_RULES

    def __init__(self, limits: Optional[LimitsConfig] = None, export: Optional[ExportConfig] = None):
        self.limits = limits or LimitsConfig()
        self.export_config = export or ExportConfig()

    def detect(self, data: bytes, filename: Optional[str] = None, mimetype: Optional[str] = None) -> DetectionResult:
        if self.has_matching_extension(filename):
            return self.result(Confidence.HIGH, "json extension")
        if self.has_matching_mimetype(mimetype):
            return self.result(Confidence.HIGH, "json mime type")
        if sniff_json(data):
            return self.result(Confidence.MEDIUM, "parses as json")
        return self.unknown()

    def parse(self, data: bytes) -> Tuple[Any, List[str]]:
        """Parse bytes into a JSON object, salvaging damaged input."""
        warnings: List[str] = []
        if len(data) > self.limits.max_json_bytes:
            raise CardParseError(
                f"JSON file too large ({len(data)} bytes, limit {self.limits.max_json_bytes})"
            )

        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise CardParseError("JSON card is not valid UTF-8", e)

        try:
            obj = json.loads(text)
        except json.JSONDecodeError as e:
            obj = recover_json(text)
            if obj is None:
                raise CardParseError("Invalid JSON", e)
            warning = f"Recovered card from malformed JSON ({e.msg} at line {e.lineno})"
            logger.warning(warning)
            warnings.append(warning)

        if isinstance(obj, list):
            first = next((item for item in obj if isinstance(item, dict)), None)
            if first is None:
                raise CardParseError("JSON array does not contain a card object")
            warnings.append("JSON array input: only the first card object was imported")
            obj = first

        return obj, warnings

    async def decode(
        self,
        data: bytes,
        filename: Optional[str],
        resolver: AssetAddressResolver,
    ) -> DecodedContainer:
        raw, warnings = self.parse(data)
        card = self.canonicalize(raw, warnings=warnings)

        descriptors = record_descriptors(card, warnings)
        assets, asset_warnings = await resolver.resolve_all(descriptors, AssetSources())
        warnings.extend(asset_warnings)

        logger.info(f"Decoded JSON card: {card['data'].get('name')}")
        return DecodedContainer(
            format=self.id,
            cards=[DecodedCard(card=card, assets=assets)],
            warnings=warnings,
        )

    def encode(self, bundle: ExportBundle) -> bytes:
        card = bundle.card
        if is_voxta_card(card):
            card = convert_card_macros(card, voxta_to_standard)

        if self.export_config.embed_assets_in_json and bundle.assets:
            card = upgrade_to_v3(card)
            descriptors = []
            for item in bundle.assets:
                descriptors.append({
                    "type": item.details.type,
                    "uri": to_data_uri(item.data, item.mimetype),
                    "name": item.details.name,
                    "ext": item.ext,
                    "is_main": item.details.is_main,
                    "tags": list(item.details.tags or []),
                })
            card["data"]["assets"] = descriptors + preserved_descriptors(bundle.card, bundle.warnings)
        elif card.get("spec") == "chara_card_v3":
            card = upgrade_to_v3(card)
            card["data"]["assets"] = preserved_descriptors(bundle.card, bundle.warnings)

        return json.dumps(card, indent=2, ensure_ascii=False).encode("utf-8")
