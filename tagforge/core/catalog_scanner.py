"""
Catalog Scanner
===============

Walks the paged remote catalog, filters and ranks entries, and returns a list
of ModelDescriptor candidates.

The upstream listing API is known to re-serve pages instead of signalling the
end of data, so three guards end a scan early without raising:

1. The raw page payload is identical to the previous page.
2. More than ``duplicate_ratio`` of a page's entries were seen on earlier pages.
3. ``max_pages`` pages have been requested.

Pages are processed strictly in order. A failed page request ends the scan
with whatever was collected so far; a failed per-entry detail or file-tree
fetch skips that entry only. Cancellation through a ``threading.Event`` also
returns the partial result.

Usage:
    >>> scanner = CatalogScanner(CatalogClient())
    >>> candidates = scanner.scan(FilterOptions(min_downloads=1000, max_models=20))
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from tagforge.core import config
from tagforge.core.errors import NetworkError
from tagforge.core.model_filter import (
    calculate_priority,
    find_labels_file,
    find_model_file,
    has_compatible_files,
    model_format_for,
    should_include,
)
from tagforge.core.models import CatalogEntry, FilterOptions, ModelDescriptor, RemoteFile
from tagforge.core.settings import CatalogSettings
from tagforge.utils.logger import log_api_call

logger = logging.getLogger(__name__)

# Called after each page with (page_number, results_so_far)
ScanProgressCallback = Callable[[int, int], None]


def descriptor_name(model_id: str) -> str:
    """Registry key for a catalog id: path separators become dashes."""
    return model_id.replace("/", "-")


def build_descriptor(
    entry: CatalogEntry,
    files: List[RemoteFile],
    options: FilterOptions,
    now: Optional[datetime] = None
) -> Optional[ModelDescriptor]:
    """
    Build a candidate descriptor from a catalog entry and its file tree.

    Candidates start disabled; they become usable only after download (and
    conversion for foreign formats).
    """
    model_file = find_model_file(files, options)
    if model_file is None:
        return None
    labels_file = find_labels_file(files, options.prefer_native_format_labels)

    return ModelDescriptor(
        name=descriptor_name(entry.id),
        display_name=entry.id,
        description=entry.description or "No description available",
        source=config.CATALOG_SOURCE_NAME,
        license=entry.license or "Unknown",
        priority=calculate_priority(entry, files, now=now),
        is_enabled=False,
        model_format=model_format_for(model_file),
        extra_metadata={
            "huggingface_id": entry.id,
            "downloads": entry.downloads,
            "likes": entry.likes,
            "tags": list(entry.tags),
            "model_file": model_file.path,
            "model_type": model_file.extension,
            "labels_file": labels_file.path if labels_file else "",
            "model_files": [f.path for f in files],
            "last_updated": entry.last_modified.isoformat() if entry.last_modified else "",
            "author": entry.author,
            "verified": entry.verified,
        },
    )


def rank_descriptors(descriptors: List[ModelDescriptor]) -> List[ModelDescriptor]:
    """Sort by priority, then raw download count, both descending."""
    return sorted(descriptors, key=lambda d: (d.priority, d.downloads), reverse=True)


class CatalogScanner:
    """
    Paginated catalog scan with loop detection.

    Args:
        client: Object exposing ``fetch_page(params)``, ``get_model_info(id)``
            and ``get_model_files(id)`` (normally a CatalogClient)
        settings: Page size, loop-guard thresholds and politeness delay
    """

    def __init__(self, client, settings: Optional[CatalogSettings] = None):
        self.client = client
        self.settings = settings or getattr(client, "settings", None) or CatalogSettings()
        self.settings.validate()

    def build_query(self, options: FilterOptions, page: int) -> Dict[str, Any]:
        """Query parameters for a 1-based page number."""
        terms = list(dict.fromkeys(options.search_terms)) or list(config.DEFAULT_SEARCH_TERMS)
        return {
            "limit": self.settings.page_size,
            "offset": self.settings.page_size * (page - 1),
            "sort": options.sort_by,
            "direction": -1 if options.sort_direction == "desc" else 1,
            "pipeline_tag": config.CATALOG_PIPELINE_TAG,
            "search": " ".join(terms),
        }

    @log_api_call(api_name="Catalog")
    def scan(
        self,
        options: Optional[FilterOptions] = None,
        stop_event: Optional[threading.Event] = None,
        progress_callback: Optional[ScanProgressCallback] = None
    ) -> List[ModelDescriptor]:
        """
        Scan the catalog and return ranked candidate descriptors.

        Args:
            options: Filter configuration (defaults to FilterOptions())
            stop_event: Set to cancel; the partial result is returned
            progress_callback: Called after each processed page

        Returns:
            Candidates sorted by priority then downloads, at most
            ``options.max_models`` long when that limit is set.
        """
        options = options or FilterOptions()
        stop_event = stop_event or threading.Event()
        now = datetime.now(timezone.utc)

        results: List[ModelDescriptor] = []
        seen_ids: Set[str] = set()
        added_ids: Set[str] = set()
        previous_payload: Optional[str] = None
        page = 0

        logger.info(f"=== Scanning catalog (min_downloads={options.min_downloads}, "
                    f"max_models={options.max_models or 'unlimited'}, formats={sorted(options.supported_formats)}) ===")

        while not stop_event.is_set():
            page += 1
            if page > self.settings.max_pages:
                logger.warning(f"Reached maximum page limit ({self.settings.max_pages}), stopping scan")
                break

            params = self.build_query(options, page)
            logger.info(f"Scanning page {page}...")
            try:
                catalog_page = self.client.fetch_page(params)
            except NetworkError as e:
                logger.error(f"Failed to fetch page {page}, returning {len(results)} partial results: {e}")
                break

            if previous_payload is not None and catalog_page.payload == previous_payload:
                logger.warning(f"Page {page} is identical to the previous page, stopping scan")
                break
            previous_payload = catalog_page.payload

            entries = catalog_page.entries
            if not entries:
                logger.info(f"No more models found on page {page}")
                break

            page_ids = [e.id for e in entries if e.id]
            duplicate_count = sum(1 for model_id in page_ids if model_id in seen_ids)
            logger.info(f"Page {page}: {len(entries)} models, {duplicate_count} already seen")
            if page > 1 and duplicate_count / len(entries) > self.settings.duplicate_ratio:
                logger.warning(f"Detected {duplicate_count}/{len(entries)} duplicate models on page {page}, stopping scan")
                break
            seen_ids.update(page_ids)

            for entry in entries:
                if stop_event.is_set():
                    break
                if entry.id in added_ids or not should_include(entry, options, now=now):
                    continue
                descriptor = self._evaluate_entry(entry, options, now)
                if descriptor is not None:
                    results.append(descriptor)
                    added_ids.add(entry.id)
                    logger.debug(f"Added compatible model: {entry.id} (downloads: {descriptor.downloads})")

            if progress_callback:
                progress_callback(page, len(results))

            if options.max_models and len(results) >= options.max_models:
                logger.info(f"Reached maximum models limit: {options.max_models}")
                break

            if stop_event.wait(self.settings.page_delay_seconds):
                break

        if stop_event.is_set():
            logger.info(f"Scan cancelled on page {page}, returning {len(results)} partial results")

        ranked = rank_descriptors(results)
        if options.max_models:
            ranked = ranked[:options.max_models]
        logger.info(f"=== Catalog scan complete: {len(ranked)} compatible models from {page} page(s) ===")
        return ranked

    def _evaluate_entry(self, entry: CatalogEntry, options: FilterOptions, now: datetime) -> Optional[ModelDescriptor]:
        """Fetch detail and files for one entry; failures skip the entry."""
        try:
            detail = self.client.get_model_info(entry.id)
            files = self.client.get_model_files(entry.id)
        except Exception as e:
            logger.warning(f"Skipping {entry.id}: {type(e).__name__}: {e}")
            return None

        if not has_compatible_files(files, options):
            logger.debug(f"Skipping {entry.id}: no compatible model files")
            return None

        merged = _merge_entries(entry, detail)
        # Listing records can omit license, privacy and archive state
        if merged is not entry and not should_include(merged, options, now=now):
            logger.debug(f"Skipping {entry.id}: excluded by filters after fetching details")
            return None
        return build_descriptor(merged, files, options, now=now)


def _merge_entries(listing: CatalogEntry, detail: Optional[CatalogEntry]) -> CatalogEntry:
    """Prefer detail fields, falling back to the listing where the detail is blank."""
    if detail is None:
        return listing
    return CatalogEntry(
        id=listing.id,
        downloads=detail.downloads or listing.downloads,
        likes=detail.likes or listing.likes,
        tags=detail.tags or listing.tags,
        license=detail.license or listing.license,
        private=detail.private or listing.private,
        archived=detail.archived or listing.archived,
        verified=detail.verified or listing.verified,
        last_modified=detail.last_modified or listing.last_modified,
        author=detail.author or listing.author,
        description=detail.description or listing.description,
    )
