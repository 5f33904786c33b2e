"""
Asset Address Resolver
=====================

Turns an asset descriptor's ``uri`` into bytes. Cards in the wild point
at their assets in several incompatible ways:

- ``data:<mime>;base64,<payload>`` inline data
- keys into a table of extra PNG text chunks (``__asset:0``,
  ``chara-ext-asset_:0`` and other historical spellings)
- paths inside the CHARX / Voxta archive (``embeded://assets/icon/main.png``)
- remote references (``https://...``, ``ccdefault:``) that carry no bytes

Each descriptor resolves independently to one of three states: resolved,
remote-deferred (reference kept for later export) or unresolved (kept,
with a warning). Resolution failures never abort an import.
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from .archive import ArchiveReader
from .errors import ArchiveLimitError, CardParseError
from .models import AssetDescriptor, ExtraChunk, ResolvedAsset
from .metadata_handler import decode_chunk_bytes
from .remote_fetcher import RemoteAssetFetcher, RemoteFetchError

logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    """Outcome of resolving one descriptor."""
    RESOLVED = "resolved"
    REMOTE_DEFERRED = "remote_deferred"
    UNRESOLVED = "unresolved"


DATA_URI_PATTERN = re.compile(r"^data:([A-Za-z0-9.+/-]+)?((?:;[^;,]*)*?);base64,(.+)$", re.DOTALL)

# Chunk keys tried in order for a descriptor id. New legacy spellings go here.
CHUNK_KEY_SHAPES = (
    "{id}",
    "__asset:{id}",
    "asset:{id}",
    "__asset_{id}",
    "chara-ext-asset_{id}",
    "chara-ext-asset_:{id}",
)

CHUNK_SCAN_PREFIX = "chara-ext-asset_"

# Prefixes removed from a uri before its trailing id is compared in the prefix scan
URI_ID_PREFIXES = (
    "chara-ext-asset_:",
    "chara-ext-asset_",
    "__asset:",
    "__asset_",
    "asset:",
)

REMOTE_PREFIXES = ("http://", "https://", "ccdefault:")
ARCHIVE_SCHEME = "embeded://"

MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "avif": "image/avif",
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "json": "application/json",
    "txt": "text/plain",
}

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/avif": "avif",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "video/mp4": "mp4",
    "video/webm": "webm",
}


def mimetype_for_ext(ext: Optional[str]) -> str:
    """MIME type for a file extension, octet-stream when unknown."""
    return MIME_TYPES.get((ext or "").lower().lstrip("."), "application/octet-stream")


def ext_for_mimetype(mimetype: Optional[str], default: str = "bin") -> str:
    return EXTENSIONS.get((mimetype or "").lower(), default)


def parse_data_uri(uri: str) -> Tuple[Optional[str], bytes]:
    """
    Decode a base64 data URI.

    Returns:
        Tuple of (media type or None, payload bytes)

    Raises:
        ValueError: Not a base64 data URI or payload is not valid base64
    """
    match = DATA_URI_PATTERN.match(uri)
    if not match:
        raise ValueError("Not a base64 data URI")
    try:
        payload = base64.b64decode("".join(match.group(3).split()), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}")
    return match.group(1), payload


def to_data_uri(data: bytes, mimetype: str) -> str:
    return f"data:{mimetype};base64,{base64.b64encode(data).decode('ascii')}"


def descriptor_id(uri: str) -> str:
    """Id used to build exact chunk-key candidates."""
    for prefix in ("__asset:", "asset:"):
        if uri.startswith(prefix):
            return uri[len(prefix):]
    return uri


def trailing_id(uri: str) -> str:
    """Id compared against chunk-key suffixes during the prefix scan."""
    for prefix in URI_ID_PREFIXES:
        if uri.startswith(prefix):
            return uri[len(prefix):].lstrip(":")
    return uri


def candidate_chunk_keys(uri: str) -> Iterator[str]:
    """
    Lazily yield chunk keys for a uri in priority order.

    The uri itself is tried last if no shape reproduces it.
    """
    seen = set()
    asset_id = descriptor_id(uri)
    for shape in CHUNK_KEY_SHAPES:
        key = shape.format(id=asset_id)
        if key not in seen:
            seen.add(key)
            yield key
    if uri not in seen:
        yield uri


def archive_path_candidates(uri: str) -> List[str]:
    """Member names an in-archive reference may point at."""
    path = uri[len(ARCHIVE_SCHEME):] if uri.startswith(ARCHIVE_SCHEME) else uri
    path = path.lstrip("/")
    candidates = [path]
    if path.startswith("assets/"):
        candidates.append(path[len("assets/"):])
    else:
        candidates.append(f"assets/{path}")
    return candidates


@dataclass
class AssetSources:
    """Byte sources available while importing one container."""
    extra_chunks: Optional[List[ExtraChunk]] = None
    archive: Optional[ArchiveReader] = None
    _chunk_index: Dict[str, str] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        for chunk in self.extra_chunks or []:
            # First occurrence of a keyword wins
            self._chunk_index.setdefault(chunk.keyword, chunk.text)

    def chunk(self, key: str) -> Optional[str]:
        return self._chunk_index.get(key)


@dataclass
class Resolution:
    """Outcome of resolving one descriptor."""
    status: ResolutionStatus
    buffer: Optional[bytes] = None
    mimetype: Optional[str] = None
    source: Optional[str] = None  # Chunk key or archive member that supplied the bytes
    warning: Optional[str] = None


class AssetAddressResolver:
    """Resolve asset descriptors against the byte sources of one import."""

    def __init__(self, fetcher: Optional[RemoteAssetFetcher] = None):
        """
        Args:
            fetcher: When set, http(s) references are downloaded instead of deferred
        """
        self.fetcher = fetcher

    def resolve_local(self, descriptor: AssetDescriptor, sources: AssetSources) -> Resolution:
        """Resolve without touching the network."""
        uri = descriptor.uri or ""
        label = f"{descriptor.type}/{descriptor.name}"

        if uri.startswith("data:"):
            try:
                mimetype, payload = parse_data_uri(uri)
            except ValueError as e:
                return Resolution(
                    ResolutionStatus.UNRESOLVED,
                    warning=f"Asset {label}: malformed data URI ({e})",
                )
            return Resolution(
                ResolutionStatus.RESOLVED,
                buffer=payload,
                mimetype=mimetype or mimetype_for_ext(descriptor.ext),
                source="data-uri",
            )

        if sources.extra_chunks and uri and "://" not in uri:
            found = self._resolve_from_chunks(uri, sources, label)
            if found is not None:
                return found

        if sources.archive is not None and uri and ("://" not in uri or uri.startswith(ARCHIVE_SCHEME)):
            for candidate in archive_path_candidates(uri):
                member = sources.archive.find(candidate)
                if member is None:
                    continue
                try:
                    payload = sources.archive.read(member)
                except ArchiveLimitError:
                    raise
                except CardParseError as e:
                    return Resolution(
                        ResolutionStatus.UNRESOLVED,
                        warning=f"Asset {label}: archive member unreadable ({e})",
                    )
                return Resolution(
                    ResolutionStatus.RESOLVED,
                    buffer=payload,
                    mimetype=mimetype_for_ext(descriptor.ext),
                    source=member,
                )

        if uri.lower().startswith(REMOTE_PREFIXES):
            return Resolution(
                ResolutionStatus.REMOTE_DEFERRED,
                warning=f"Asset {label} is a remote reference ({uri}); kept without downloading",
            )

        return Resolution(
            ResolutionStatus.UNRESOLVED,
            warning=f"Asset {label} could not be resolved ({uri or 'empty uri'})",
        )

    def _resolve_from_chunks(self, uri: str, sources: AssetSources, label: str) -> Optional[Resolution]:
        for key in candidate_chunk_keys(uri):
            text = sources.chunk(key)
            if text is not None:
                return self._chunk_resolution(key, text, label)

        wanted = trailing_id(uri)
        matches = [
            chunk.keyword
            for chunk in sources.extra_chunks
            if chunk.keyword.startswith(CHUNK_SCAN_PREFIX)
            and chunk.keyword[len(CHUNK_SCAN_PREFIX):].lstrip(":") == wanted
        ]
        if not matches:
            return None

        # Unique keywords only; several distinct keys can collapse to one suffix
        distinct = list(dict.fromkeys(matches))
        if len(distinct) > 1:
            logger.warning(
                f"Asset {label}: {len(distinct)} chunks match '{uri}' by prefix scan, "
                f"using '{distinct[0]}' (ignored: {', '.join(distinct[1:])})"
            )
        resolution = self._chunk_resolution(distinct[0], sources.chunk(distinct[0]), label)
        if len(distinct) > 1 and resolution.status == ResolutionStatus.RESOLVED:
            resolution.warning = (
                f"Asset {label}: ambiguous chunk reference '{uri}', used '{distinct[0]}'"
            )
        return resolution

    @staticmethod
    def _chunk_resolution(key: str, text: str, label: str) -> Resolution:
        try:
            payload = decode_chunk_bytes(text)
        except (binascii.Error, ValueError) as e:
            return Resolution(
                ResolutionStatus.UNRESOLVED,
                warning=f"Asset {label}: chunk '{key}' is not valid base64 ({e})",
            )
        logger.debug(f"Resolved asset {label} from chunk '{key}'")
        return Resolution(ResolutionStatus.RESOLVED, buffer=payload, source=key)

    async def resolve(self, descriptor: AssetDescriptor, sources: AssetSources) -> Resolution:
        """
        Resolve one descriptor, downloading remote references when enabled.
        """
        resolution = self.resolve_local(descriptor, sources)
        uri = descriptor.uri or ""

        if (
            resolution.status == ResolutionStatus.REMOTE_DEFERRED
            and self.fetcher is not None
            and uri.lower().startswith(("http://", "https://"))
        ):
            try:
                payload, content_type = await self.fetcher.fetch(uri)
            except RemoteFetchError as e:
                resolution.warning = f"Asset {descriptor.type}/{descriptor.name}: download failed ({e}); kept as remote reference"
                return resolution
            return Resolution(
                ResolutionStatus.RESOLVED,
                buffer=payload,
                mimetype=content_type or mimetype_for_ext(descriptor.ext),
                source=uri,
            )

        if resolution.status == ResolutionStatus.RESOLVED and not resolution.mimetype:
            resolution.mimetype = mimetype_for_ext(descriptor.ext)
        return resolution

    async def resolve_all(
        self,
        descriptors: List[AssetDescriptor],
        sources: AssetSources,
    ) -> Tuple[List[ResolvedAsset], List[str]]:
        """
        Resolve every descriptor in source order.

        Returns:
            Tuple of (resolved assets including deferred/unresolved ones, warnings)
        """
        results = []
        warnings = []
        for descriptor in descriptors:
            resolution = await self.resolve(descriptor, sources)
            if resolution.warning:
                warnings.append(resolution.warning)
                logger.warning(resolution.warning)
            results.append(ResolvedAsset(
                descriptor=descriptor,
                buffer=resolution.buffer,
                mimetype=resolution.mimetype or mimetype_for_ext(descriptor.ext),
                status=resolution.status.value,
                source_path=resolution.source,
            ))
        return results, warnings
