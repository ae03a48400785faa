"""
Import gateway - orchestrates the bundle import pipeline.

This module handles the complete import flow:
1. Parse the Bundle envelope into batch entries
2. Order entries so referenced resources are written first
3. Collect the batch keys used for reference validation
4. Apply every entry to the resource store
5. Publish the events of the confirmed writes
6. Return the aggregate ImportResult
"""

import asyncio
import logging

from fhirvault.exceptions import BundleParseError
from fhirvault.import_.executor import ImportExecutor
from fhirvault.import_.ordering import order_entries
from fhirvault.import_.parser import parse_bundle
from fhirvault.import_.validation import build_batch_keys
from fhirvault.schemas.import_schemas import (
    ErrorSeverity,
    ImportErrorDetail,
    ImportRequest,
    ImportResult,
)
from fhirvault.services.events import EventDispatcher
from fhirvault.services.resource_store import ResourceStore

logger = logging.getLogger(__name__)


async def process_import(
    request: ImportRequest,
    store: ResourceStore,
    dispatcher: EventDispatcher,
    imported_by: str = "system",
    cancel_event: asyncio.Event | None = None,
) -> ImportResult:
    """
    Process an import request through the full pipeline.

    Args:
        request: The import request with the raw bundle and strategy flags
        store: Resource store the entries are written to
        dispatcher: Receives the events of every confirmed write
        imported_by: Recorded as creator/modifier of written resources
        cancel_event: Optional event that stops processing before the next entry

    Returns:
        ImportResult describing every processed entry. A bundle that cannot
        be parsed yields a result with a single fatal error and nothing
        processed.
    """
    result = ImportResult()
    logger.info(
        "Import %s started (strategy=%s, skip_existing=%s, update_existing=%s)",
        result.import_job_id,
        request.strategy.value,
        request.skip_existing,
        request.update_existing,
    )

    try:
        parsed = parse_bundle(request.bundle)
    except BundleParseError as e:
        logger.warning("Import %s rejected: %s", result.import_job_id, e)
        result.errors.append(
            ImportErrorDetail(
                resource_type="Bundle",
                message=str(e),
                code=e.code,
                severity=ErrorSeverity.FATAL,
            )
        )
        return result

    entries = order_entries(parsed.entries)
    batch_keys = build_batch_keys(entries)

    executor = ImportExecutor(store, request, imported_by=imported_by)
    result, events = await executor.execute(
        entries, batch_keys, cancel_event=cancel_event, result=result
    )

    await dispatcher.publish(events)

    logger.info(
        "Import %s finished: %d processed, %d imported, %d updated, "
        "%d skipped, %d failed%s",
        result.import_job_id,
        result.total_processed,
        result.successfully_imported,
        result.updated,
        result.skipped,
        result.failed_to_import,
        " (cancelled)" if result.cancelled else "",
    )
    return result
