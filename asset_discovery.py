from __future__ import annotations

import base64
import binascii
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from asset_urls import EXTERNAL_PREFIX, AssetReference, make_absolute
from http_client import RequestError, RequestExecutor, RequestSpec, RetryPolicy


logger = logging.getLogger(__name__)

CSS_URL_RE = re.compile(r"(url\(['\"]?)(.*?)(['\"]?\))", re.IGNORECASE)
ATTRS_TO_SCAN = ("src", "poster", "data-src")
LINK_RELS = {"stylesheet", "icon", "shortcut", "preload", "apple-touch-icon"}
BAD_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "#")
CSS_DOWNLOAD_WORKERS = 5
CSS_RETRY_POLICY = RetryPolicy(max_attempts=5)
BOM = "\ufeff"


@dataclass
class CssBlock:
    key: str
    base_url: str = ""
    href: Optional[str] = None
    content: Optional[str] = None
    assets_base_url: Optional[str] = None


def find_css_asset_urls(text: str) -> List[str]:
    urls: List[str] = []
    for match in CSS_URL_RE.finditer(text or ""):
        url = match.group(2)
        if url and not url.startswith("data:"):
            urls.append(url)
    return urls


def make_css_urls_absolute(text: str, css_url: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        prefix, url, suffix = match.groups()
        if url.startswith("data:"):
            return match.group(0)
        return f"{prefix}{urljoin(css_url, url)}{suffix}"

    return CSS_URL_RE.sub(_replace, text)


def _usable(value: Optional[str]) -> Optional[str]:
    candidate = (value or "").strip()
    if not candidate or candidate.lower().startswith(BAD_SCHEMES):
        return None
    return candidate


def find_html_asset_urls(html: str) -> List[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    urls: List[str] = []

    for tag in soup.find_all(True):
        for attr in ATTRS_TO_SCAN:
            candidate = _usable(tag.get(attr))
            if candidate:
                urls.append(candidate)

        srcset = tag.get("srcset")
        if srcset:
            for item in srcset.split(","):
                candidate = _usable(item.strip().split(" ")[0])
                if candidate:
                    urls.append(candidate)

        if tag.name == "link":
            rels = {rel.lower() for rel in (tag.get("rel") or [])}
            candidate = _usable(tag.get("href"))
            if candidate and rels & LINK_RELS:
                urls.append(candidate)

        style = tag.get("style")
        if style:
            urls.extend(find_css_asset_urls(style))

        if tag.name == "style" and tag.string:
            urls.extend(find_css_asset_urls(tag.string))

    return list(dict.fromkeys(urls))


def download_css_content(
    blocks: Sequence[CssBlock],
    executor: Optional[RequestExecutor] = None,
    workers: int = CSS_DOWNLOAD_WORKERS,
    retry_policy: RetryPolicy = CSS_RETRY_POLICY,
) -> None:
    executor = executor or RequestExecutor()

    def _download(block: CssBlock) -> None:
        if not block.href:
            return
        css_url = make_absolute(block.href, block.base_url)
        logger.debug("Downloading CSS file from %s", css_url)
        try:
            response = executor.execute(RequestSpec(url=css_url), retry_policy)
        except RequestError as exc:
            logger.warning(
                "Failed to fetch CSS file from %s (using %s with base URL %s), styles may be missing: %s",
                css_url,
                block.href,
                block.base_url,
                exc,
            )
            return

        text = response.content.decode("utf-8", errors="replace")
        if text.startswith(BOM):
            text = text[1:]
        if not css_url.startswith(block.base_url):
            text = make_css_urls_absolute(text, css_url)

        block.content = text
        block.assets_base_url = re.sub(r"/[^/]*$", "/", css_url)
        block.href = None
        logger.debug("Downloaded CSS file from %s, %d chars", css_url, len(text))

    pending = [block for block in blocks if block.href]
    if not pending:
        return
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(pending)))) as pool:
        for _ in pool.map(_download, pending):
            pass


def collect_references(
    references: Iterable[AssetReference],
    css_blocks: Iterable[CssBlock] = (),
) -> List[AssetReference]:
    collected = list(references)
    for block in css_blocks:
        for url in find_css_asset_urls(block.content or ""):
            collected.append(AssetReference(url=url, base_url=block.assets_base_url or block.base_url))
    return unique_references(collected)


def unique_references(references: Iterable[AssetReference]) -> List[AssetReference]:
    seen = set()
    unique: List[AssetReference] = []
    for reference in references:
        key = (reference.url, reference.base_url)
        if key in seen:
            continue
        seen.add(key)
        unique.append(reference)
    return unique


def rewrite_asset_urls(text: str, references: Iterable[AssetReference]) -> str:
    for reference in references:
        name = reference.resolved_name
        if not name or not name.startswith("/" + EXTERNAL_PREFIX) or name == reference.url:
            continue
        text = text.replace(reference.url, name)
        if "&" in reference.url:
            text = text.replace(reference.url.replace("&", "&amp;"), name)
    return text


def write_inlined_image(base64_data: str, src: str, root: Optional[Path] = None) -> Path:
    target = (Path(root) if root is not None else Path.cwd()) / src.lstrip("/")
    try:
        data = base64.b64decode(base64_data, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 data for {src}: {exc}") from exc
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    return target
