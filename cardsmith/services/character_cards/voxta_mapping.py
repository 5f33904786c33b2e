"""
Voxta ⇄ Character Card V3 mapping.

Pure functions between Voxta's PascalCase records (character.json,
book.json, scenario.json) and the canonical V3 record. Voxta-only
settings survive a round trip under ``data.extensions.voxta``.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .macro_processor import convert_card_macros, standard_to_voxta, voxta_to_standard
from .normalization import normalize_timestamp

# uuid5 namespace for ids derived from card ids
VOXTA_NAMESPACE = uuid.UUID("6f1c5b8e-2d4a-4c3e-9a57-0b3f8d2e71a4")

CHAT_SETTING_FIELDS = (
    ("ChatStyle", "chatStyle"),
    ("EnableThinkingSpeech", "enableThinkingSpeech"),
    ("NotifyUserAwayReturn", "notifyUserAwayReturn"),
    ("TimeAware", "timeAware"),
    ("UseMemory", "useMemory"),
    ("MaxTokens", "maxTokens"),
    ("MaxSentences", "maxSentences"),
)

# Character fields kept verbatim so an export can restore them
ORIGINAL_FIELDS = ("DateCreated", "DateModified", "Culture", "ExplicitContent",
                   "SystemPromptOverrideType", "Augmentations")


def derived_id(seed: str, purpose: str) -> str:
    """Stable UUID for a card id and a role (character, package, book)."""
    return str(uuid.uuid5(VOXTA_NAMESPACE, f"{purpose}:{seed}"))


def parse_asset_path(path: str) -> Tuple[str, List[str]]:
    """
    Asset type and structural tags from a Voxta asset path.

    ``.../Avatars/<Folder>/<Emotion>_<State>_<Variant>.<ext>`` gives an icon
    tagged emotion:/state:/variant: for the segments present;
    ``.../VoiceSamples/...`` gives a sound tagged voice; anything else is custom.
    """
    if "/Avatars/" in path:
        filename = path.rsplit("/", 1)[-1]
        stem = filename.rsplit(".", 1)[0] if "." in filename else filename
        parts = [p for p in stem.split("_")] if stem else []
        tags = []
        if len(parts) >= 1 and parts[0]:
            tags.append(f"emotion:{parts[0].lower()}")
        if len(parts) >= 2 and parts[1]:
            tags.append(f"state:{parts[1].lower()}")
        if len(parts) >= 3 and parts[2]:
            tags.append(f"variant:{parts[2]}")
        return "icon", tags

    if "/VoiceSamples/" in path:
        return "sound", ["voice"]

    return "custom", []


def voxta_book_to_lorebook(book: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a Voxta book to a character_book (deleted items dropped)."""
    entries = []
    for index, item in enumerate(book.get("Items") or []):
        if not isinstance(item, dict) or item.get("Deleted"):
            continue
        weight = item.get("Weight")
        entries.append({
            "keys": [k for k in item.get("Keywords") or [] if isinstance(k, str)],
            "content": item.get("Text") or "",
            "enabled": True,
            "insertion_order": weight if isinstance(weight, int) and not isinstance(weight, bool) else 100,
            "id": index,
            "extensions": {"voxta": {"id": item.get("Id")}},
        })

    return {
        "name": book.get("Name"),
        "description": book.get("Description"),
        "extensions": {"voxta": {"id": book.get("Id"), "version": book.get("Version")}},
        "entries": entries,
    }


def lorebook_to_voxta_book(
    lorebook: Dict[str, Any],
    book_id: str,
    package_id: Optional[str],
    fallback_name: str,
) -> Dict[str, Any]:
    """Convert a character_book to a Voxta book.json record."""
    items = []
    for index, entry in enumerate(lorebook.get("entries") or []):
        if not isinstance(entry, dict) or entry.get("enabled") is False:
            continue
        voxta_ext = (entry.get("extensions") or {}).get("voxta") or {}
        items.append({
            "Id": voxta_ext.get("id") or derived_id(f"{book_id}:{index}", "book-item"),
            "Keywords": list(entry.get("keys") or []),
            "Text": entry.get("content") or "",
            "Weight": entry.get("insertion_order", 100),
            "Deleted": False,
        })

    return {
        "$type": "book",
        "Id": book_id,
        "Name": lorebook.get("name") or fallback_name,
        "PackageId": package_id,
        "Description": lorebook.get("description") or "",
        "Items": items,
    }


def voxta_to_ccv3(character: Dict[str, Any], books: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """
    Map a Voxta character record to a canonical V3 record.

    Args:
        character: Parsed character.json
        books: Parsed book.json records from the same package; the ones
            listed in MemoryBooks are folded into character_book

    Returns:
        Wrapped V3 record with standard macro spelling
    """
    chat_settings = {
        ext_key: character[voxta_key]
        for voxta_key, ext_key in CHAT_SETTING_FIELDS
        if character.get(voxta_key) is not None
    }

    voxta_ext = {
        "id": character.get("Id"),
        "packageId": character.get("PackageId"),
        "version": character.get("Version"),
        "appearance": character.get("Description") or "",
        "textToSpeech": character.get("TextToSpeech"),
        "chatSettings": chat_settings,
        "scripts": character.get("Scripts"),
        "defaultScenarios": character.get("DefaultScenarios"),
        "original": {key: character[key] for key in ORIGINAL_FIELDS if key in character},
    }
    voxta_ext = {k: v for k, v in voxta_ext.items() if v is not None}

    data: Dict[str, Any] = {
        "name": character.get("Name") or "Unknown",
        "description": character.get("Profile") or "",
        "personality": character.get("Personality") or "",
        "scenario": character.get("Scenario") or "",
        "first_mes": character.get("FirstMessage") or "",
        "mes_example": character.get("MessageExamples") or "",
        "creator_notes": character.get("CreatorNotes") or "",
        "system_prompt": character.get("SystemPrompt") or "",
        "post_history_instructions": character.get("PostHistoryInstructions") or "",
        "alternate_greetings": [g for g in character.get("AlternativeFirstMessages") or [] if isinstance(g, str)],
        "group_only_greetings": [],
        "tags": [t for t in character.get("Tags") or [] if isinstance(t, str)],
        "creator": character.get("Creator") or "",
        "character_version": character.get("Version") or "",
        "extensions": {"voxta": voxta_ext},
    }

    for voxta_key, field in (("DateCreated", "creation_date"), ("DateModified", "modification_date")):
        stamp = normalize_timestamp(character.get(voxta_key))
        if stamp is not None:
            data[field] = stamp

    memory_books = set(character.get("MemoryBooks") or [])
    linked = [b for b in books or [] if isinstance(b, dict) and b.get("Id") in memory_books]
    if linked:
        lorebooks = [voxta_book_to_lorebook(b) for b in linked]
        merged = lorebooks[0]
        for extra in lorebooks[1:]:
            merged["entries"].extend(extra["entries"])
        data["character_book"] = merged

    card = {"spec": "chara_card_v3", "spec_version": "3.0", "data": data}
    return convert_card_macros(card, voxta_to_standard)


def ccv3_to_voxta(
    card: Dict[str, Any],
    character_id: str,
    package_id: str,
    book_ids: Optional[List[str]] = None,
    now: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Map a canonical V3 record to a Voxta character.json record.

    Macros are converted to Voxta spelling.
    """
    converted = convert_card_macros(card, standard_to_voxta)
    data = converted.get("data") or {}
    voxta_ext = (data.get("extensions") or {}).get("voxta") or {}
    chat_settings = voxta_ext.get("chatSettings") or {}
    original = voxta_ext.get("original") or {}
    stamp = now or datetime.now(timezone.utc).isoformat()

    character: Dict[str, Any] = {
        "$type": "character",
        "Id": character_id,
        "PackageId": package_id,
        "Name": data.get("name") or "Unknown",
        "Version": data.get("character_version") or "1.0.0",
        "Description": voxta_ext.get("appearance") or "",
        "Personality": data.get("personality") or "",
        "Profile": data.get("description") or "",
        "Scenario": data.get("scenario") or "",
        "FirstMessage": data.get("first_mes") or "",
        "AlternativeFirstMessages": list(data.get("alternate_greetings") or []),
        "MessageExamples": data.get("mes_example") or "",
        "Creator": data.get("creator") or "",
        "CreatorNotes": data.get("creator_notes") or "",
        "Tags": list(data.get("tags") or []),
    }

    if voxta_ext.get("textToSpeech") is not None:
        character["TextToSpeech"] = voxta_ext["textToSpeech"]
    for voxta_key, ext_key in CHAT_SETTING_FIELDS:
        if chat_settings.get(ext_key) is not None:
            character[voxta_key] = chat_settings[ext_key]
    if voxta_ext.get("scripts") is not None:
        character["Scripts"] = voxta_ext["scripts"]
    if voxta_ext.get("defaultScenarios"):
        character["DefaultScenarios"] = voxta_ext["defaultScenarios"]
    if book_ids:
        character["MemoryBooks"] = list(book_ids)

    for key in ORIGINAL_FIELDS:
        if key in original and key not in ("DateCreated", "DateModified"):
            character[key] = original[key]
    character["DateCreated"] = original.get("DateCreated") or stamp
    character["DateModified"] = stamp

    return character


def build_character_scenario_map(
    characters: List[Dict[str, Any]],
    scenarios: List[Dict[str, Any]],
) -> Dict[str, List[str]]:
    """Character id → scenario ids, from scenario roles and DefaultScenarios."""
    mapping: Dict[str, List[str]] = {}

    def link(character_id: Optional[str], scenario_id: Optional[str]) -> None:
        if not character_id or not scenario_id:
            return
        ids = mapping.setdefault(character_id, [])
        if scenario_id not in ids:
            ids.append(scenario_id)

    for scenario in scenarios:
        for role in scenario.get("Roles") or []:
            if isinstance(role, dict):
                link(role.get("CharacterId"), scenario.get("Id"))

    for character in characters:
        for scenario_id in character.get("DefaultScenarios") or []:
            link(character.get("Id"), scenario_id)

    return mapping


def scenario_summary(scenario: Dict[str, Any], order: int) -> Dict[str, Any]:
    """Collection entry for one scenario."""
    character_ids = []
    for role in scenario.get("Roles") or []:
        character_id = role.get("CharacterId") if isinstance(role, dict) else None
        if character_id and character_id not in character_ids:
            character_ids.append(character_id)

    summary = {
        "voxtaScenarioId": scenario.get("Id"),
        "name": scenario.get("Name") or "Scenario",
        "description": scenario.get("Description"),
        "version": scenario.get("Version"),
        "creator": scenario.get("Creator"),
        "characterIds": character_ids,
        "order": order,
        "explicitContent": scenario.get("ExplicitContent"),
        "hasThumbnail": bool(scenario.get("Thumbnail")),
    }
    return {k: v for k, v in summary.items() if v is not None}
