"""Scan job lifecycle: create, enqueue and run scan jobs."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List

from cleanbox.errors import NotFoundError, ScanInProgressError
from cleanbox.models import (
    ScanStatus,
    create_scan_job,
    fetch_auto_scan_accounts,
    get_active_scan_job,
    get_email_account,
    get_scan_job,
    mark_auto_scanned,
    update_scan_job,
)

if TYPE_CHECKING:
    from cleanbox.extensions import Services

logger = logging.getLogger(__name__)

SCAN_JOB_TYPE = "email_scan"


def run_scan_job(services: "Services", scan_job_id: int) -> int:
    """
    Run one attempt of a scan job: PENDING/FAILED -> IN_PROGRESS -> COMPLETED | FAILED.

    Any failure is recorded on the job and re-raised so the queue can decide
    whether to retry. Returns the number of emails scanned.
    """
    scan_job = get_scan_job(scan_job_id)
    if scan_job is None:
        raise NotFoundError.scan_job_not_found(scan_job_id)

    logger.info(f"Processing scan job {scan_job_id}...")
    update_scan_job(scan_job_id, ScanStatus.IN_PROGRESS)

    try:
        account = get_email_account(scan_job["email_account_id"])
        if account is None:
            raise NotFoundError.email_account_not_found(scan_job["email_account_id"])
        emails_scanned = services.scan_service.scan(account)
    except Exception as exc:
        update_scan_job(scan_job_id, ScanStatus.FAILED, error=str(exc))
        logger.error(f"Scan job {scan_job_id} failed: {exc}")
        raise

    update_scan_job(scan_job_id, ScanStatus.COMPLETED, emails_scanned=emails_scanned)
    logger.info(f"Scan job {scan_job_id} completed: {emails_scanned} emails scanned")
    return emails_scanned


def enqueue_scan(services: "Services", email_account_id: int) -> Dict[str, Any]:
    """Create a PENDING scan job for the account and hand it to the job queue."""
    if get_email_account(email_account_id) is None:
        raise NotFoundError.email_account_not_found(email_account_id)
    if get_active_scan_job(email_account_id):
        raise ScanInProgressError(email_account_id)

    scan_job = create_scan_job(email_account_id)
    scan_job_id = scan_job["id"]

    def execute() -> int:
        return run_scan_job(services, scan_job_id)

    services.job_queue.enqueue(
        SCAN_JOB_TYPE,
        email_account_id,
        execute,
        job_id=f"scan-{scan_job_id}",
    )
    return scan_job


def scan_auto(services: "Services") -> List[Dict[str, Any]]:
    """Enqueue a scan for every account with auto-scan enabled."""
    accounts = fetch_auto_scan_accounts()
    logger.info(f"Found {len(accounts)} accounts with auto-scan enabled")

    created: List[Dict[str, Any]] = []
    for account in accounts:
        try:
            scan_job = enqueue_scan(services, account["id"])
        except ScanInProgressError:
            logger.info(f"Account {account['id']} already has a scan in progress, skipping")
            continue
        mark_auto_scanned(account["id"])
        logger.info(f"Created scan job {scan_job['id']} for account {account['email']}")
        created.append(scan_job)

    logger.info(f"Auto-scan created {len(created)} scan jobs")
    return created
