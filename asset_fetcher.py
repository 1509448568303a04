from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

import requests
from requests.adapters import HTTPAdapter

from asset_urls import AssetKind, ClassifiedAsset, decode_name, suffix_for_content_type
from http_client import RequestError, RequestExecutor, RequestSpec, RetryPolicy
from settings import DEFAULT_FETCH_WORKERS


logger = logging.getLogger(__name__)

ASSET_RETRY_POLICY = RetryPolicy(max_attempts=5)


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    content: bytes


@dataclass(frozen=True)
class FetchedFile:
    asset: ClassifiedAsset
    entry: ArchiveEntry


@dataclass(frozen=True)
class InlinedFile:
    asset: ClassifiedAsset


@dataclass(frozen=True)
class FetchFailure:
    asset: ClassifiedAsset
    error: RequestError

    @property
    def url(self) -> str:
        return self.asset.fetch_url


FetchOutcome = Union[FetchedFile, InlinedFile, FetchFailure]


@dataclass
class FetchedAssets:
    entries: List[ArchiveEntry] = field(default_factory=list)
    local_files: List[str] = field(default_factory=list)
    failures: List[FetchFailure] = field(default_factory=list)


def pooled_session(workers: int) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=workers, pool_maxsize=workers)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class AssetFetcher:
    def __init__(
        self,
        executor: Optional[RequestExecutor] = None,
        workers: int = DEFAULT_FETCH_WORKERS,
        retry_policy: RetryPolicy = ASSET_RETRY_POLICY,
        root: Optional[Path] = None,
    ) -> None:
        self.workers = max(1, workers)
        self.executor = executor or RequestExecutor(session=pooled_session(self.workers))
        self.retry_policy = retry_policy
        self.root = Path(root) if root is not None else Path.cwd()

    def fetch_all(self, assets: Sequence[ClassifiedAsset]) -> FetchedAssets:
        """Resolve content for every classified asset.

        Remote assets are fetched in parallel. A failed asset is logged and
        left out; it never fails the whole batch. Outcomes are attached on the
        calling thread, so references are only mutated here.
        """
        result = FetchedAssets()
        remote = [asset for asset in assets if asset.kind is not AssetKind.INLINE]

        for asset in assets:
            if asset.kind is AssetKind.INLINE:
                self._attach(result, InlinedFile(asset))

        if remote:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(remote))) as pool:
                futures = [pool.submit(self.fetch, asset) for asset in remote]
                for future in as_completed(futures):
                    self._attach(result, future.result())

        logger.debug(
            "Resolved %d fetched and %d inlined assets, %d failed",
            len(result.entries),
            len(result.local_files),
            len(result.failures),
        )
        return result

    def fetch(self, asset: ClassifiedAsset) -> FetchOutcome:
        if asset.kind is AssetKind.INLINE:
            return InlinedFile(asset)

        logger.debug("Fetching asset from %s, storing as %s", asset.fetch_url, asset.name)
        try:
            response = self.executor.execute(RequestSpec(url=asset.fetch_url), self.retry_policy)
        except RequestError as exc:
            return FetchFailure(asset=asset, error=exc)

        name = asset.name
        if asset.kind is AssetKind.EXTERNAL:
            # svg and friends need a real suffix to render
            name += suffix_for_content_type(response.headers.get("content-type"))
        entry = ArchiveEntry(name=decode_name(name), content=response.content)
        return FetchedFile(asset=asset, entry=entry)

    def _attach(self, result: FetchedAssets, outcome: FetchOutcome) -> None:
        if isinstance(outcome, FetchFailure):
            logger.warning("Failed to fetch url %s: %s", outcome.url, outcome.error)
            result.failures.append(outcome)
        elif isinstance(outcome, InlinedFile):
            logger.debug("Adding inlined asset %s", outcome.asset.name)
            outcome.asset.reference.resolved_name = f"/{outcome.asset.name}"
            result.local_files.append(outcome.asset.name)
        else:
            outcome.asset.reference.resolved_name = f"/{outcome.entry.name}"
            result.entries.append(outcome.entry)
