"""
Export Validator
===============

Checks a card and its stored assets before encoding and applies the
non-destructive fixes (duplicate names, deterministic ordering). Every
violation is collected in one pass so a failed export can list them all.
"""

import hashlib
import logging
from typing import Any, Dict, FrozenSet, Iterable, List

from cardsmith.services.asset_storage import STORAGE_URL_PREFIX, AssetStorage

from .asset_resolver import ARCHIVE_SCHEME
from .models import CardAssetWithDetails, ValidationResult
from .tag_heuristics import MAIN_BACKGROUND, PORTRAIT_OVERRIDE, actor_indices

logger = logging.getLogger(__name__)

RULE_ICON_REQUIRED = "icon_required"
RULE_UNIQUE_NAMES = "unique_names"
RULE_EMBEDDED_REFS = "embedded_refs"
RULE_FILES_EXIST = "files_exist"
RULE_HASHES = "hashes"
RULE_TAG_SINGLETONS = "tag_singletons"

ALL_RULES: FrozenSet[str] = frozenset({
    RULE_ICON_REQUIRED,
    RULE_UNIQUE_NAMES,
    RULE_EMBEDDED_REFS,
    RULE_FILES_EXIST,
    RULE_HASHES,
    RULE_TAG_SINGLETONS,
})

# Invariants every exported bundle must satisfy
BUNDLE_RULES: FrozenSet[str] = frozenset({
    RULE_UNIQUE_NAMES,
    RULE_FILES_EXIST,
    RULE_TAG_SINGLETONS,
})


def duplicate_names(assets: Iterable[CardAssetWithDetails]) -> List[str]:
    """Names that occur more than once, in first-duplicate order."""
    seen = set()
    duplicates: List[str] = []
    for asset in assets:
        if asset.name in seen and asset.name not in duplicates:
            duplicates.append(asset.name)
        seen.add(asset.name)
    return duplicates


def apply_export_fixes(assets: List[CardAssetWithDetails]) -> int:
    """
    Rename duplicate asset names in place by appending ``_<n>``.

    The first occurrence keeps its name; later ones get ``name_1``,
    ``name_2``... skipping any suffix already taken.

    Returns:
        Number of assets renamed
    """
    counts: Dict[str, int] = {}
    taken = {asset.name for asset in assets}
    used = set()
    renamed = 0

    for asset in assets:
        base = asset.name
        if base not in used:
            used.add(base)
            counts.setdefault(base, 0)
            continue

        count = counts.get(base, 0)
        candidate = base
        while candidate in used or (candidate != base and candidate in taken):
            count += 1
            candidate = f"{base}_{count}"
        counts[base] = count

        asset.name = candidate
        used.add(candidate)
        renamed += 1

    return renamed


def normalize_asset_order(assets: Iterable[CardAssetWithDetails]) -> List[CardAssetWithDetails]:
    """Deterministic encode order: type, then order_index, then name."""
    return sorted(assets, key=lambda a: (a.type, a.order_index, a.name))


def tag_errors(assets: List[CardAssetWithDetails]) -> List[str]:
    """Singleton tag violations, one message per offending asset."""
    errors = []
    for tag, label in ((PORTRAIT_OVERRIDE, "portrait override"), (MAIN_BACKGROUND, "main background")):
        tagged = [a for a in assets if tag in (a.tags or [])]
        if len(tagged) > 1:
            for asset in tagged:
                errors.append(
                    f"{asset.name}: Multiple {tag} tags found ({len(tagged)} total). "
                    f"Only one asset should be marked as {label}."
                )
    return errors


def actor_warnings(assets: List[CardAssetWithDetails]) -> List[str]:
    indices = actor_indices(a.tags for a in assets)
    if not indices:
        return []
    missing = [i for i in range(1, len(indices) + 1) if i not in indices]
    if not missing:
        return []
    return [
        f"Non-continuous actor indices detected. Expected continuous indices from "
        f"1-{len(indices)}, but missing: {', '.join(str(i) for i in missing)}"
    ]


class ExportValidator:
    """Run export rules against a card and its assets."""

    def __init__(self, storage: AssetStorage):
        self.storage = storage

    async def validate(
        self,
        card: Dict[str, Any],
        assets: List[CardAssetWithDetails],
        rules: FrozenSet[str] = ALL_RULES,
    ) -> ValidationResult:
        """
        Validate (and fix) assets for export.

        Args:
            card: Stored canonical record
            assets: Assets to export; renamed in place when names collide
            rules: Rule names to run

        Returns:
            ValidationResult; ``valid`` is False when any fatal rule failed
        """
        result = ValidationResult()

        if RULE_ICON_REQUIRED in rules and not any(a.type == "icon" for a in assets):
            result.errors.append("Card must have at least one portrait asset (type: icon)")

        if RULE_UNIQUE_NAMES in rules:
            duplicates = duplicate_names(assets)
            if duplicates:
                result.warnings.append(f"Duplicate asset names found: {', '.join(duplicates)}")
                renamed = apply_export_fixes(assets)
                result.fixes.append(f"Renamed {renamed} duplicate assets by appending index")

        if RULE_EMBEDDED_REFS in rules:
            missing = self._missing_embedded_refs(card, assets)
            if missing:
                result.errors.append(
                    f"{len(missing)} asset(s) reference missing files: {', '.join(missing)}"
                )

        if RULE_FILES_EXIST in rules:
            missing_files = []
            for asset in assets:
                if asset.is_virtual or not asset.url.startswith(STORAGE_URL_PREFIX):
                    continue
                if not await self.storage.exists(asset.url):
                    missing_files.append(f"{asset.name} ({asset.url})")
            if missing_files:
                result.errors.append(
                    f"{len(missing_files)} asset file(s) not found on disk: {', '.join(missing_files)}"
                )

        if RULE_HASHES in rules and not result.errors:
            for asset in assets:
                if asset.is_virtual:
                    result.hashes[asset.id] = hashlib.sha256(asset.inline_data).hexdigest()
                elif asset.url.startswith(STORAGE_URL_PREFIX):
                    result.hashes[asset.id] = await self.storage.sha256(asset.url)
            result.fixes.append("Recomputed asset hashes for deterministic export")

        if RULE_TAG_SINGLETONS in rules:
            result.errors.extend(tag_errors(assets))
            result.warnings.extend(actor_warnings(assets))

        result.valid = not result.errors
        if not result.valid:
            logger.warning(f"Export validation failed with {len(result.errors)} error(s)")
        return result

    @staticmethod
    def _missing_embedded_refs(card: Dict[str, Any], assets: List[CardAssetWithDetails]) -> List[str]:
        data = card.get("data") if isinstance(card.get("data"), dict) else {}
        missing = []
        for descriptor in data.get("assets") or []:
            if not isinstance(descriptor, dict):
                continue
            uri = descriptor.get("uri") or ""
            if not uri.startswith(ARCHIVE_SCHEME):
                continue
            path = uri[len(ARCHIVE_SCHEME):]
            if not any(asset.name and asset.name in path for asset in assets):
                missing.append(f"{descriptor.get('type')}/{descriptor.get('name')} ({uri})")
        return missing
