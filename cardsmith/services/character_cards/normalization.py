"""
Card Data Normalization
======================

Repairs the malformed shapes that circulate in the wild before a record
is validated and stored: unwrapped legacy V1/V2 objects, hybrid V2 exports
that duplicate fields at the root, wrong spec strings, null optional
fields, millisecond timestamps and numeric lorebook positions.
"""

import copy
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import CardSchemaError
from .models import ASSET_TYPES, CCv2Card, CCv3Card

logger = logging.getLogger(__name__)

SPEC_V2 = "chara_card_v2"
SPEC_V3 = "chara_card_v3"

CARD_FIELDS = (
    "name",
    "description",
    "personality",
    "scenario",
    "first_mes",
    "mes_example",
    "creator_notes",
    "system_prompt",
    "post_history_instructions",
    "alternate_greetings",
    "character_book",
    "tags",
    "creator",
    "character_version",
    "extensions",
)

V2_REQUIRED_STRINGS = ("name", "description", "personality", "scenario", "first_mes", "mes_example")
V3_REQUIRED_STRINGS = V2_REQUIRED_STRINGS + ("creator", "character_version")
V3_NULLABLE_FIELDS = (
    "assets",
    "creator_notes_multilingual",
    "source",
    "creation_date",
    "modification_date",
    "creator_notes",
    "system_prompt",
    "post_history_instructions",
    "nickname",
)

# Lorebook entry fields that only exist in V3; kept under extensions
V3_ENTRY_FIELDS = (
    "probability",
    "depth",
    "use_regex",
    "scan_frequency",
    "role",
    "group",
    "automation_id",
    "selective_logic",
    "selectiveLogic",
)

# 10 digits are seconds, 13 are milliseconds
TIMESTAMP_THRESHOLD = 10_000_000_000

_DIGITS = re.compile(r"^\d+$")


def detect_spec(card: Any) -> Optional[str]:
    """
    Work out which card version a decoded object is.

    Returns:
        'v2', 'v3' or None when the object does not look like a card
    """
    if not isinstance(card, dict):
        return None

    spec = card.get("spec")
    if spec == SPEC_V3:
        return "v3"
    if spec == SPEC_V2:
        return "v2"

    spec_version = str(card.get("spec_version", ""))
    if isinstance(spec, str) and spec:
        if spec_version.startswith("3"):
            return "v3"
        if isinstance(card.get("data"), dict):
            return "v2"

    # Legacy unwrapped cards (V1 or bare V2 data)
    if isinstance(card.get("name"), str) and ("description" in card or "first_mes" in card or "personality" in card):
        return "v2"
    if isinstance(card.get("data"), dict) and isinstance(card["data"].get("name"), str):
        return "v2"

    return None


def normalize_card_data(
    card: Dict[str, Any],
    spec: str,
    warnings: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Return a wrapped, repaired copy of a decoded card.

    Args:
        card: Decoded card object (not modified)
        spec: 'v2' or 'v3' as returned by detect_spec
        warnings: Collects a note when malformed asset descriptors are dropped

    Returns:
        {spec, spec_version, data} dict ready for schema validation
    """
    obj = copy.deepcopy(card)

    if "data" not in obj or not isinstance(obj.get("data"), dict):
        # Fields at the root (ChubAI style or legacy V1): move them under data
        data = {}
        for key in CARD_FIELDS + ("assets", "nickname", "group_only_greetings", "source",
                                  "creation_date", "modification_date", "creator_notes_multilingual"):
            if key in obj:
                data[key] = obj.pop(key)
        obj["data"] = data
    else:
        # Hybrid export: data object plus duplicated root fields
        for key in CARD_FIELDS:
            obj.pop(key, None)

    if spec == "v3":
        obj["spec"] = SPEC_V3
        if not str(obj.get("spec_version") or "").startswith("3"):
            obj["spec_version"] = "3.0"
    else:
        obj["spec"] = SPEC_V2
        if not str(obj.get("spec_version") or "").startswith("2"):
            obj["spec_version"] = "2.0"

    data = obj["data"]
    if data.get("character_book") is None:
        data.pop("character_book", None)
    else:
        normalize_lorebook(data["character_book"])

    dropped = _normalize_assets(data)
    if dropped:
        warning = f"Dropped {dropped} malformed asset descriptor(s)"
        logger.warning(warning)
        if warnings is not None:
            warnings.append(warning)

    if spec == "v3":
        _normalize_v3_data(data)
    else:
        for key in V2_REQUIRED_STRINGS:
            if data.get(key) is None:
                data[key] = ""
        if "alternate_greetings" in data and not isinstance(data["alternate_greetings"], list):
            data["alternate_greetings"] = []

    if not isinstance(data.get("tags"), list):
        data["tags"] = []
    if not isinstance(data.get("extensions"), dict):
        data["extensions"] = {}

    return obj


def _normalize_v3_data(data: Dict[str, Any]) -> None:
    for key in V3_NULLABLE_FIELDS:
        if key in data and data[key] is None:
            del data[key]

    for key in V3_REQUIRED_STRINGS:
        if not isinstance(data.get(key), str):
            data[key] = ""

    for key in ("tags", "group_only_greetings", "alternate_greetings"):
        value = data.get(key)
        data[key] = [v for v in value if isinstance(v, str)] if isinstance(value, list) else []

    source = data.get("source")
    if isinstance(source, str):
        data["source"] = [source]
    elif isinstance(source, list):
        data["source"] = [s for s in source if isinstance(s, str)]
    elif "source" in data:
        del data["source"]

    for key in ("creation_date", "modification_date"):
        if key in data:
            value = normalize_timestamp(data[key])
            if value is None:
                del data[key]
            else:
                data[key] = value


def _normalize_assets(data: Dict[str, Any]) -> int:
    """Repair data.assets in place; returns how many descriptors were dropped."""
    assets = data.get("assets")
    if not isinstance(assets, list):
        data.pop("assets", None)
        return 0 if assets is None else 1

    kept = [_repair_descriptor(a) for a in assets if _is_valid_descriptor(a)]
    if kept:
        data["assets"] = kept
    else:
        del data["assets"]
    return len(assets) - len(kept)


def _is_valid_descriptor(asset: Any) -> bool:
    return isinstance(asset, dict) and isinstance(asset.get("uri"), str)


def _repair_descriptor(asset: Dict[str, Any]) -> Dict[str, Any]:
    """Unknown types become custom; missing name/ext get defaults."""
    if asset.get("type") not in ASSET_TYPES:
        asset["type"] = "custom"
    if not isinstance(asset.get("name"), str):
        asset["name"] = str(asset.get("name") or "")
    if not isinstance(asset.get("ext"), str) or not asset["ext"]:
        tail = asset["uri"].rsplit("/", 1)[-1]
        asset["ext"] = tail.rsplit(".", 1)[-1].lower() if "." in tail else "bin"
    return asset


def normalize_timestamp(value: Any) -> Optional[int]:
    """Coerce seconds, milliseconds, numeric strings or ISO dates to epoch seconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        value = int(value)
        return value // 1000 if value > TIMESTAMP_THRESHOLD else value
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if _DIGITS.match(raw):
            num = int(raw)
            return num // 1000 if num > TIMESTAMP_THRESHOLD else num
        try:
            return int(datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp())
        except ValueError:
            return None
    return None


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else None
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def normalize_lorebook(book: Any) -> None:
    """Repair a character_book in place."""
    if not isinstance(book, dict):
        return

    for key in ("scan_depth", "token_budget"):
        if key in book:
            coerced = _coerce_int(book[key])
            if coerced is None:
                del book[key]
            else:
                book[key] = coerced

    recursive = book.get("recursive_scanning")
    if isinstance(recursive, str):
        lowered = recursive.strip().lower()
        if lowered in ("true", "false"):
            book["recursive_scanning"] = lowered == "true"
        else:
            del book["recursive_scanning"]
    elif recursive is not None and not isinstance(recursive, bool):
        del book["recursive_scanning"]

    entries = book.get("entries")
    if not isinstance(entries, list):
        book["entries"] = []
        return

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if not isinstance(entry.get("keys"), list):
            entry["keys"] = []
        if not isinstance(entry.get("content"), str):
            entry["content"] = ""
        if not isinstance(entry.get("enabled"), bool):
            entry["enabled"] = True
        if isinstance(entry.get("insertion_order"), bool) or not isinstance(entry.get("insertion_order"), (int, float)):
            entry["insertion_order"] = 100
        if not isinstance(entry.get("extensions"), dict):
            entry["extensions"] = {}

        if "position" in entry:
            entry_position = _normalize_position(entry["position"])
            if entry_position is None:
                del entry["position"]
            else:
                entry["position"] = entry_position

        for key in V3_ENTRY_FIELDS:
            if key in entry:
                entry["extensions"][key] = entry.pop(key)

    book["entries"] = [e for e in entries if isinstance(e, dict)]


def _normalize_position(position: Any) -> Optional[str]:
    if position is None:
        return None
    if isinstance(position, (int, float)) and not isinstance(position, bool):
        return "before_char" if position == 0 else "after_char"
    if isinstance(position, str):
        lowered = position.lower()
        if "before" in lowered or lowered == "0":
            return "before_char"
        return "after_char"
    return None


def validate_card(card: Dict[str, Any], spec: str) -> Dict[str, Any]:
    """
    Validate a normalized record against the card schema.

    Returns:
        The record as a plain dict with schema defaults filled in

    Raises:
        CardSchemaError: Structural validation failed
    """
    model = CCv3Card if spec == "v3" else CCv2Card
    try:
        parsed = model.model_validate(card)
    except ValidationError as e:
        raise CardSchemaError(e.errors())
    return parsed.model_dump(mode="json", exclude_none=True)


def upgrade_to_v3(card: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a wrapped V2 record into V3 shape (copy)."""
    if card.get("spec") == SPEC_V3:
        return copy.deepcopy(card)

    data = copy.deepcopy(card.get("data") or {})
    data.setdefault("group_only_greetings", [])
    data.setdefault("creator", "")
    data.setdefault("character_version", "")
    return {"spec": SPEC_V3, "spec_version": "3.0", "data": data}


def downgrade_to_v2(card: Dict[str, Any]) -> Dict[str, Any]:
    """Strip V3-only fields from a record (copy)."""
    data = copy.deepcopy(card.get("data") or {})
    for key in ("assets", "nickname", "creator_notes_multilingual", "source",
                "group_only_greetings", "creation_date", "modification_date"):
        data.pop(key, None)
    return {"spec": SPEC_V2, "spec_version": "2.0", "data": data}


def extract_card_name(card: Dict[str, Any]) -> str:
    """Character name from a wrapped or unwrapped card."""
    data = card.get("data") if isinstance(card.get("data"), dict) else card
    name = data.get("name") if isinstance(data, dict) else None
    return name if isinstance(name, str) and name else "Untitled"


def extract_card_tags(card: Dict[str, Any]) -> List[str]:
    """Tags from a wrapped or unwrapped card."""
    data = card.get("data") if isinstance(card.get("data"), dict) else card
    tags = data.get("tags") if isinstance(data, dict) else None
    return [t for t in tags if isinstance(t, str)] if isinstance(tags, list) else []
