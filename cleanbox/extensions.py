"""
Service handles built once per app.

`create_app` calls `build_services` and stores the result on
`app.extensions["cleanbox"]`; `close_services` stops the job queue and drops
cached Gmail clients.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from flask import current_app

from cleanbox.services.extraction_client import ExtractionClient
from cleanbox.services.gmail_fetcher import GmailMessageFetcher
from cleanbox.services.job_queue import JobQueue
from cleanbox.services.package_aggregator import PackageAggregator
from cleanbox.services.package_extraction import PackageExtractionService
from cleanbox.services.promo_extraction import PromoExtractionService
from cleanbox.services.scan_service import ScanService

logger = logging.getLogger(__name__)

EXTENSION_KEY = "cleanbox"


@dataclass
class Services:
    fetcher: GmailMessageFetcher
    extraction_client: ExtractionClient
    promo_extraction: PromoExtractionService
    package_extraction: PackageExtractionService
    aggregator: PackageAggregator
    scan_service: ScanService
    job_queue: JobQueue


def build_services(
    app: Any,
    extraction_client: Optional[ExtractionClient] = None,
    fetcher: Optional[GmailMessageFetcher] = None,
) -> Services:
    """Wire the pipeline from app.config. Tests pass fake clients in."""
    config = app.config
    fetcher = fetcher or GmailMessageFetcher(
        client_id=config["GOOGLE_CLIENT_ID"],
        client_secret=config["GOOGLE_CLIENT_SECRET"],
        scopes=config["GOOGLE_SCOPES"],
    )
    extraction_client = extraction_client or ExtractionClient.from_config(config)
    promo_extraction = PromoExtractionService(extraction_client)
    package_extraction = PackageExtractionService(
        extraction_client, sender_blacklist=config["PACKAGE_SENDER_BLACKLIST"]
    )
    aggregator = PackageAggregator()
    scan_service = ScanService(
        fetcher=fetcher,
        promo_extraction=promo_extraction,
        package_extraction=package_extraction,
        aggregator=aggregator,
        max_results=config["SCAN_MAX_RESULTS"],
        newer_than=config["SCAN_NEWER_THAN"],
    )
    job_queue = JobQueue(
        app,
        max_workers=config["QUEUE_WORKERS"],
        max_attempts=config["QUEUE_ATTEMPTS"],
        backoff_seconds=config["QUEUE_BACKOFF_SECONDS"],
    )
    return Services(
        fetcher=fetcher,
        extraction_client=extraction_client,
        promo_extraction=promo_extraction,
        package_extraction=package_extraction,
        aggregator=aggregator,
        scan_service=scan_service,
        job_queue=job_queue,
    )


def close_services(services: Services) -> None:
    services.job_queue.shutdown()
    services.fetcher.close()
    logger.info("CleanBox services closed")


def get_services(app: Any = None) -> Services:
    """Services of the given app, or of the current app context."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
