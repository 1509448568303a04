from __future__ import annotations

import hashlib
import logging
import mimetypes
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Set
from urllib.parse import unquote, urljoin


logger = logging.getLogger(__name__)

EXTERNAL_PREFIX = "_external/"
INLINED_MARKER = ".snapbundle-tmp/_inlined"
DEFAULT_CONTENT_TYPE = "image/png"
HTTP_SCHEME_RE = re.compile(r"^https?:", re.IGNORECASE)
LOOPBACK_RE = re.compile(r"//(localhost|127\.0\.0\.1)(:|/)", re.IGNORECASE)
# Escapes of reserved characters stay encoded when names are decoded.
RESERVED_ESCAPE_RE = re.compile(r"(%(?:2[346BCFbcf]|3[ABDFabdf]|40))")

# Built-in table only, so suffixes never depend on the host's mime.types files.
_MIME_TYPES = mimetypes.MimeTypes()


class AssetKind(Enum):
    INLINE = "inline"
    REMOTE = "remote"
    EXTERNAL = "external"


@dataclass
class AssetReference:
    url: str
    base_url: str = ""
    resolved_name: Optional[str] = None


@dataclass(frozen=True)
class ClassifiedAsset:
    reference: AssetReference
    name: str
    kind: AssetKind
    fetch_url: str


class DedupState:
    """Names claimed during one packaging run. First claim wins."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def claim(self, name: str) -> bool:
        if name in self._seen:
            return False
        self._seen.add(name)
        return True

    def __contains__(self, name: object) -> bool:
        return name in self._seen

    def __len__(self) -> int:
        return len(self._seen)


def strip_query(url: str) -> str:
    index = url.find("?")
    if index != -1:
        return url[:index]
    return url


def base_prefix(base_url: str) -> str:
    if not base_url or base_url.endswith("/"):
        return base_url
    return base_url + "/"


def normalize_name(url: str, base_url: str) -> str:
    # Lossy on purpose: only a single leading "../" is removed.
    prefix = base_prefix(base_url)
    if prefix and url.startswith(prefix):
        return url[len(prefix):]
    if url.startswith("/"):
        return url[1:]
    if url.startswith("../"):
        return url[3:]
    return url


def make_absolute(url: str, base_url: str) -> str:
    if url.startswith("//"):
        scheme = base_url.split(":")[0] if base_url and ":" in base_url else "https"
        return f"{scheme}:{url}"
    if HTTP_SCHEME_RE.match(url):
        return url
    return urljoin(base_url, url)


def is_absolute(url: str) -> bool:
    return url.startswith("//") or bool(HTTP_SCHEME_RE.match(url))


def is_loopback(url: str) -> bool:
    return bool(LOOPBACK_RE.search(url))


def external_name(url: str) -> str:
    return EXTERNAL_PREFIX + hashlib.md5(url.encode("utf-8")).hexdigest()


def decode_name(name: str) -> str:
    """Percent-decode an archive name, keeping reserved escapes like %2F."""
    parts = RESERVED_ESCAPE_RE.split(name)
    return "".join(part if index % 2 else unquote(part) for index, part in enumerate(parts))


def suffix_for_content_type(content_type: Optional[str]) -> str:
    mime = (content_type or "").split(";")[0].strip().lower() or DEFAULT_CONTENT_TYPE
    return _MIME_TYPES.guess_extension(mime) or ""


def classify_asset(
    reference: AssetReference,
    state: DedupState,
    download_all_assets: bool = False,
) -> Optional[ClassifiedAsset]:
    """Assign the archive name for one reference, or None when it is skipped.

    Runs synchronously and claims the name in ``state`` before any fetch
    starts, so two references can never race for the same name.
    """
    url = reference.url or ""
    base_url = reference.base_url or ""

    prefix = base_prefix(base_url)
    same_origin = bool(prefix) and url.startswith(prefix)
    foreign = is_absolute(url) and not same_origin
    dynamic = "?" in url

    if foreign and not download_all_assets and not is_loopback(url):
        logger.debug("Skipping external asset %s", url)
        return None

    if foreign or dynamic:
        name = external_name(url)
    else:
        name = normalize_name(strip_query(url), base_url)

    if not name or name.startswith("#"):
        logger.debug("Skipping empty or fragment-only reference %r", url)
        return None
    if not state.claim(name):
        logger.debug("Skipping duplicate reference %s (already stored as %s)", url, name)
        return None

    if INLINED_MARKER in name:
        return ClassifiedAsset(reference=reference, name=name, kind=AssetKind.INLINE, fetch_url=name)

    kind = AssetKind.EXTERNAL if (foreign or dynamic) else AssetKind.REMOTE
    return ClassifiedAsset(
        reference=reference,
        name=name,
        kind=kind,
        fetch_url=make_absolute(url, base_url),
    )


def classify_assets(
    references: Iterable[AssetReference],
    download_all_assets: bool = False,
    state: Optional[DedupState] = None,
) -> List[ClassifiedAsset]:
    state = state if state is not None else DedupState()
    classified: List[ClassifiedAsset] = []
    for reference in references:
        asset = classify_asset(reference, state, download_all_assets)
        if asset is not None:
            classified.append(asset)
    return classified
