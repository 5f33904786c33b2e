"""
Asset tag heuristics.

Derives the semantic tags the export rules care about from a descriptor
and, when available, its bytes. Animation is detected by byte patterns
only; images are never decoded here.
"""

import re
from typing import Iterable, List, Optional

from .models import AssetDescriptor

PORTRAIT_OVERRIDE = "portrait-override"
MAIN_BACKGROUND = "main-background"
EXPRESSION = "expression"
ANIMATED = "animated"

RECOGNIZED_TAGS = {PORTRAIT_OVERRIDE, EXPRESSION, MAIN_BACKGROUND, ANIMATED}
ACTOR_TAG = re.compile(r"^actor-(\d+)$")

GIF_LOOP_MARKER = b"NETSCAPE2.0"
GIF_GRAPHICS_CONTROL = b"\x21\xf9\x04"
WEBP_ANIM_MARKER = b"ANIM"


def is_recognized_tag(tag: str) -> bool:
    return tag in RECOGNIZED_TAGS or bool(ACTOR_TAG.match(tag))


def detect_animated(buffer: Optional[bytes], mimetype: Optional[str] = None) -> bool:
    """Byte-pattern check for animated WebP and GIF data."""
    if not buffer:
        return False

    kind = (mimetype or "").lower()
    if kind == "image/webp" or (buffer[:4] == b"RIFF" and buffer[8:12] == b"WEBP"):
        return WEBP_ANIM_MARKER in buffer

    if kind == "image/gif" or buffer[:6] in (b"GIF87a", b"GIF89a"):
        return GIF_LOOP_MARKER in buffer or buffer.count(GIF_GRAPHICS_CONTROL) > 1

    return False


def extract_tags(
    descriptor: AssetDescriptor,
    buffer: Optional[bytes] = None,
    mimetype: Optional[str] = None,
    structural_tags: Iterable[str] = (),
) -> List[str]:
    """
    Tags to store for one imported asset.

    Args:
        descriptor: Source descriptor (its tags are filtered to the known set)
        buffer: Resolved bytes, if any
        mimetype: Resolved MIME type
        structural_tags: Codec-derived tags (emotion:, state:, voice, ...) kept as-is

    Returns:
        Ordered, de-duplicated tag list
    """
    tags: List[str] = []

    def add(tag: str) -> None:
        if tag not in tags:
            tags.append(tag)

    for tag in descriptor.tags or []:
        if isinstance(tag, str) and is_recognized_tag(tag):
            add(tag)

    if descriptor.type == "icon" and descriptor.name == "main":
        add(PORTRAIT_OVERRIDE)
    if descriptor.type == "background" and descriptor.name == "main":
        add(MAIN_BACKGROUND)

    if ANIMATED not in tags and detect_animated(buffer, mimetype):
        add(ANIMATED)

    for tag in structural_tags:
        add(tag)

    return tags


def actor_indices(tag_lists: Iterable[Iterable[str]]) -> List[int]:
    """Sorted distinct actor-N indices across several assets."""
    found = set()
    for tags in tag_lists:
        for tag in tags or []:
            match = ACTOR_TAG.match(tag)
            if match:
                found.add(int(match.group(1)))
    return sorted(found)
