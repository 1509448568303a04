from __future__ import annotations

import logging
from typing import Iterable, Optional

from asset_fetcher import AssetFetcher
from asset_urls import AssetReference, DedupState, classify_assets
from deterministic_archive import Bundle, build_archive
from settings import Settings, configure_logging


logger = logging.getLogger(__name__)


def create_asset_package(
    references: Iterable[AssetReference],
    download_all_assets: Optional[bool] = None,
    fetcher: Optional[AssetFetcher] = None,
    settings: Optional[Settings] = None,
) -> Bundle:
    """Classify, fetch and archive every asset reference into one Bundle.

    Names are assigned before any fetch starts. Assets that cannot be fetched
    are dropped; only archive construction errors abort the run.
    """
    settings = settings or Settings.from_env()
    if settings.debug:
        configure_logging(debug=True)
    if download_all_assets is None:
        download_all_assets = settings.download_all_assets
    fetcher = fetcher or AssetFetcher(workers=settings.fetch_workers)

    references = list(references)
    logger.debug("Creating asset package from %d references", len(references))

    state = DedupState()
    assets = classify_assets(references, download_all_assets=download_all_assets, state=state)
    fetched = fetcher.fetch_all(assets)

    if fetched.failures:
        logger.warning(
            "%d of %d assets could not be downloaded and were left out of the package",
            len(fetched.failures),
            len(assets),
        )
    return build_archive(fetched.entries, fetched.local_files, root=fetcher.root)
