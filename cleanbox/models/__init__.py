"""Model layer - re-exports from the db, packages and schemas modules."""
from __future__ import annotations

from . import db, packages, schemas

ScanStatus = db.ScanStatus
init_app = db.init_app
ensure_tables = db.ensure_tables
close_connection = db.close_connection

# Accounts, emails, promo codes, scan jobs
create_email_account = db.create_email_account
get_email_account = db.get_email_account
fetch_auto_scan_accounts = db.fetch_auto_scan_accounts
update_account_tokens = db.update_account_tokens
mark_auto_scanned = db.mark_auto_scanned
create_email = db.create_email
get_email_by_id = db.get_email_by_id
get_email_by_message_id = db.get_email_by_message_id
get_existing_message_ids = db.get_existing_message_ids
update_email_body = db.update_email_body
delete_email = db.delete_email
create_promo_code = db.create_promo_code
fetch_promo_codes_for_email = db.fetch_promo_codes_for_email
create_scan_job = db.create_scan_job
get_scan_job = db.get_scan_job
get_active_scan_job = db.get_active_scan_job
update_scan_job = db.update_scan_job

# Package events and packages
create_package_event = packages.create_package_event
update_package_event = packages.update_package_event
get_package_event = packages.get_package_event
get_event_by_email_id = packages.get_event_by_email_id
fetch_orphan_events = packages.fetch_orphan_events
fetch_events_for_account = packages.fetch_events_for_account
fetch_events_for_package = packages.fetch_events_for_package
link_events_to_package = packages.link_events_to_package
reset_event_links = packages.reset_event_links
create_package = packages.create_package
update_package = packages.update_package
get_package_by_id = packages.get_package_by_id
get_package_by_order_number = packages.get_package_by_order_number
fetch_packages_for_account = packages.fetch_packages_for_account
delete_packages_for_account = packages.delete_packages_for_account

# Typed extraction payloads
PromoDetails = schemas.PromoDetails
PackageItem = schemas.PackageItem
PackageDetails = schemas.PackageDetails
EventDescription = schemas.EventDescription
parse_timestamp = schemas.parse_timestamp
