"""
Catalog Entry Filtering and Priority Scoring
============================================

Pure functions evaluating one catalog entry against a FilterOptions object.
Nothing here performs I/O or keeps state, so identical inputs always produce
identical results.

Main Components:
- should_include(): Metadata checks on a listing entry
- has_compatible_files(): File-tree checks (model format, size)
- find_model_file() / find_labels_file(): Artifact selection
- calculate_priority(): Additive ranking score
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from tagforge.core import config
from tagforge.core.models import CatalogEntry, FilterOptions, ModelFormat, RemoteFile

logger = logging.getLogger(__name__)


def is_supported_architecture(entry: CatalogEntry) -> bool:
    """True when the id or any tag mentions a known classification architecture."""
    name = entry.id.lower()
    tags = [t.lower() for t in entry.tags]
    return any(
        arch in name or any(arch in tag for tag in tags)
        for arch in config.SUPPORTED_ARCHITECTURES
    )


def is_model_compatible(model_id: str) -> bool:
    """
    Check that a model id does not name a quantized format.

    These formats require special libraries and cannot be exported to or
    loaded by the ONNX runtime.
    """
    model_id_lower = model_id.lower()
    for pattern in config.INCOMPATIBLE_MODEL_PATTERNS:
        if pattern in model_id_lower:
            logger.debug(f"Model {model_id} is incompatible (matched pattern: {pattern})")
            return False
    return True


def _days_since(timestamp: Optional[datetime], now: datetime) -> Optional[float]:
    if timestamp is None:
        return None
    return (now - timestamp).total_seconds() / 86400.0


def should_include(entry: CatalogEntry, options: FilterOptions, now: Optional[datetime] = None) -> bool:
    """
    Decide whether a catalog entry passes the metadata filters.

    All checks must pass: supported architecture, no quantized format,
    minimum downloads and likes, archive/private/verified flags, update
    recency and license allow-list.

    Args:
        entry: The catalog entry to evaluate
        options: Filter configuration for the current scan
        now: Reference time for the recency check (defaults to the current UTC time)

    Returns:
        True if the entry should be considered further
    """
    if not entry.id:
        return False
    if not is_supported_architecture(entry):
        return False
    if not is_model_compatible(entry.id):
        return False
    if entry.downloads < options.min_downloads:
        return False
    if entry.likes < options.min_likes:
        return False
    if options.exclude_archived and entry.archived:
        return False
    if options.exclude_private and entry.private:
        return False
    if options.only_verified and not entry.verified:
        return False

    if options.max_days_since_update is not None:
        age = _days_since(entry.last_modified, now or datetime.now(timezone.utc))
        if age is None or age > options.max_days_since_update:
            return False

    # Entries that declare no license are not rejected by the allow-list
    if options.licenses and entry.license:
        license_lower = entry.license.lower()
        if not any(allowed in license_lower for allowed in options.licenses):
            return False

    return True


# ============================================================================
# FILE SELECTION
# ============================================================================

def _is_label_file(path: str) -> bool:
    name = path.lower()
    return any(hint in name for hint in config.LABEL_FILE_HINTS) or name.endswith(".txt")


def find_model_file(files: List[RemoteFile], options: Optional[FilterOptions] = None) -> Optional[RemoteFile]:
    """Pick the model file, preferring the native format over foreign ones."""
    formats = options.supported_formats if options else frozenset(config.DEFAULT_SUPPORTED_FORMATS)
    for group in (config.NATIVE_MODEL_EXTENSIONS, config.FOREIGN_MODEL_EXTENSIONS):
        for f in files:
            if f.type == "file" and f.extension in group and f.extension in formats:
                return f
    return None


def find_labels_file(files: List[RemoteFile], prefer_plain_text: bool = True) -> Optional[RemoteFile]:
    """Pick a label-like file; plain ``.txt`` label files first when preferred."""
    candidates = [f for f in files if f.type == "file" and _is_label_file(f.path)]
    if not candidates:
        return None
    if prefer_plain_text:
        for f in candidates:
            if f.extension == "txt":
                return f
    return candidates[0]


def model_format_for(model_file: RemoteFile) -> ModelFormat:
    if model_file.extension in config.NATIVE_MODEL_EXTENSIONS:
        return ModelFormat.NATIVE
    return ModelFormat.FOREIGN


def has_compatible_files(files: List[RemoteFile], options: FilterOptions) -> bool:
    """
    Check a catalog file tree for a usable model file.

    A file with one of ``options.supported_formats`` must be present and, when
    a size limit is configured and the size is known, it must fit. A missing
    label file is acceptable: synthetic labels are written on download.
    """
    model_file = find_model_file(files, options)
    if model_file is None:
        return False

    if options.max_model_size_mb and model_file.size is not None:
        size_mb = model_file.size / (1024 * 1024)
        if size_mb > options.max_model_size_mb:
            logger.debug(f"Model file {model_file.path} too large: {size_mb:.1f} MB > {options.max_model_size_mb} MB")
            return False

    if find_labels_file(files, options.prefer_native_format_labels) is None:
        logger.debug(f"No labels file found among {len(files)} files, synthetic labels will be needed")

    return True


# ============================================================================
# PRIORITY
# ============================================================================

def calculate_priority(entry: CatalogEntry, files: List[RemoteFile], now: Optional[datetime] = None) -> int:
    """
    Compute the additive ranking score for a catalog entry.

    Starts at 50 and adds boosts for downloads, likes, verification, recent
    updates and well-known label taxonomies. The score has no upper bound.
    """
    priority = 50

    if entry.downloads > 10000:
        priority += 30
    elif entry.downloads > 1000:
        priority += 20
    elif entry.downloads > 100:
        priority += 10

    if entry.likes > 100:
        priority += 15
    elif entry.likes > 10:
        priority += 10

    if entry.verified:
        priority += 20

    age = _days_since(entry.last_modified, now or datetime.now(timezone.utc))
    if age is not None:
        if age < 30:
            priority += 10
        elif age < 90:
            priority += 5

    file_names = [f.path.lower() for f in files]
    if any(hint in name for name in file_names for hint in config.WELL_KNOWN_LABEL_HINTS):
        priority += 15

    return priority
