"""
Data Model
==========

Dataclasses shared by every part of the lifecycle engine:

- ModelDescriptor: one known model, either a catalog candidate or installed locally
- ModelRegistry: the persisted list of installed descriptors plus the default name
- FilterOptions: immutable scan configuration
- CatalogEntry / RemoteFile: normalised catalog records
- TagResult / TaggingResult: output of the tagging service

Registry JSON uses camelCase keys; the Python attributes are snake_case.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from tagforge.core import config

logger = logging.getLogger(__name__)

_SYNTHETIC_LABEL_RE = re.compile(config.SYNTHETIC_LABEL_PATTERN)


# ============================================================================
# ENUMS
# ============================================================================

class ModelFormat(str, Enum):
    NATIVE = "Native"
    FOREIGN = "ForeignFormat"


class ConversionStatus(str, Enum):
    NOT_CONVERTED = "NotConverted"
    CONVERTING = "Converting"
    CONVERTED = "Converted"
    FAILED = "Failed"


# ============================================================================
# LABEL FILE HELPERS
# ============================================================================

def read_label_lines(labels_path: str) -> List[str]:
    """
    Read a plain-text label file, one label per line.

    Interior blank lines are kept so label indices stay aligned with model
    outputs; trailing blank lines are dropped.
    """
    with open(labels_path, "r", encoding="utf-8") as f:
        lines = [line.rstrip("\r\n").strip() for line in f]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def is_placeholder_labels(labels: List[str]) -> bool:
    """True when every non-empty label is a synthetic ``class_NNNN`` placeholder."""
    non_empty = [label for label in labels if label]
    if not non_empty:
        return False
    return all(_SYNTHETIC_LABEL_RE.match(label) for label in non_empty)


def synthetic_labels(count: int = config.SYNTHETIC_LABEL_COUNT) -> List[str]:
    return [config.SYNTHETIC_LABEL_FORMAT.format(i) for i in range(count)]


def write_synthetic_labels(labels_path: str, count: int = config.SYNTHETIC_LABEL_COUNT) -> str:
    """Write a placeholder label file and return its path."""
    with open(labels_path, "w", encoding="utf-8") as f:
        f.write("\n".join(synthetic_labels(count)) + "\n")
    logger.debug(f"Created synthetic labels file with {count} classes: {labels_path}")
    return labels_path


# ============================================================================
# MODEL DESCRIPTOR
# ============================================================================

@dataclass
class ModelDescriptor:
    """
    Normalised description of one model.

    Attributes:
        name: Unique key, the catalog id with '/' replaced by '-'
        display_name: Human readable name (usually the catalog id)
        model_path: Path to the model file (empty until downloaded)
        labels_path: Path to the label file (empty until downloaded)
        image_width / image_height: Model input size
        confidence_threshold: Minimum score for a tag (0.0-1.0)
        max_tags: Maximum number of tags returned per image
        is_enabled: Whether the tagging service may use this model
        priority: Higher is preferred
        model_format: NATIVE (ONNX) or FOREIGN (needs conversion)
        conversion_status: Lifecycle of the conversion job
        source / license: Provenance
        extra_metadata: Catalog-specific facts (downloads, likes, verified, files)
    """
    name: str
    display_name: str = ""
    description: str = ""
    model_path: str = ""
    labels_path: str = ""
    image_width: int = config.DEFAULT_IMAGE_WIDTH
    image_height: int = config.DEFAULT_IMAGE_HEIGHT
    confidence_threshold: float = config.DEFAULT_CONFIDENCE_THRESHOLD
    max_tags: int = config.DEFAULT_MAX_TAGS
    is_enabled: bool = False
    priority: int = 0
    model_format: ModelFormat = ModelFormat.NATIVE
    conversion_status: ConversionStatus = ConversionStatus.NOT_CONVERTED
    source: str = ""
    license: str = ""
    extra_metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.name
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold for {self.name} must be within 0.0-1.0, got {self.confidence_threshold}")
        if self.max_tags < 1:
            raise ValueError(f"max_tags for {self.name} must be positive, got {self.max_tags}")

    @property
    def needs_conversion(self) -> bool:
        return self.model_format == ModelFormat.FOREIGN and self.conversion_status != ConversionStatus.CONVERTED

    @property
    def downloads(self) -> int:
        try:
            return int(self.extra_metadata.get("downloads", 0) or 0)
        except (TypeError, ValueError):
            return 0

    def has_placeholder_labels(self) -> bool:
        if not self.labels_path or not os.path.isfile(self.labels_path):
            return False
        try:
            return is_placeholder_labels(read_label_lines(self.labels_path))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read labels for {self.name}: {e}")
            return False

    def unusable_reason(self) -> Optional[str]:
        """Return why the descriptor cannot serve inference, or None if it can."""
        for kind, path in (("Model", self.model_path), ("Labels", self.labels_path)):
            if not path:
                return f"{kind} path is not set for {self.name}"
            if not os.path.isfile(path):
                return f"{kind} file not found for {self.name}: {path}"
            if os.path.getsize(path) == 0:
                return f"{kind} file is empty for {self.name}: {path}"
        if self.has_placeholder_labels():
            return f"Labels for {self.name} are synthetic placeholders"
        return None

    def is_usable(self) -> bool:
        return self.unusable_reason() is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "description": self.description,
            "modelPath": self.model_path,
            "labelsPath": self.labels_path,
            "imageWidth": self.image_width,
            "imageHeight": self.image_height,
            "confidenceThreshold": self.confidence_threshold,
            "maxTags": self.max_tags,
            "isEnabled": self.is_enabled,
            "priority": self.priority,
            "modelFormat": self.model_format.value,
            "conversionStatus": self.conversion_status.value,
            "source": self.source,
            "license": self.license,
            "extraMetadata": self.extra_metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelDescriptor":
        if not data.get("name"):
            raise ValueError("Model descriptor is missing 'name'")
        return cls(
            name=data["name"],
            display_name=data.get("displayName", ""),
            description=data.get("description", ""),
            model_path=data.get("modelPath", ""),
            labels_path=data.get("labelsPath", ""),
            image_width=int(data.get("imageWidth", config.DEFAULT_IMAGE_WIDTH)),
            image_height=int(data.get("imageHeight", config.DEFAULT_IMAGE_HEIGHT)),
            confidence_threshold=float(data.get("confidenceThreshold", config.DEFAULT_CONFIDENCE_THRESHOLD)),
            max_tags=int(data.get("maxTags", config.DEFAULT_MAX_TAGS)),
            is_enabled=bool(data.get("isEnabled", False)),
            priority=int(data.get("priority", 0)),
            model_format=ModelFormat(data.get("modelFormat", ModelFormat.NATIVE.value)),
            conversion_status=ConversionStatus(data.get("conversionStatus", ConversionStatus.NOT_CONVERTED.value)),
            source=data.get("source", ""),
            license=data.get("license", ""),
            extra_metadata=dict(data.get("extraMetadata") or {}),
        )


@dataclass
class ModelRegistry:
    """Persisted root: ordered descriptors plus the default model name."""
    models: List[ModelDescriptor] = field(default_factory=list)
    default_model_name: str = ""

    def find(self, name: str) -> Optional[ModelDescriptor]:
        """Case-insensitive lookup on name or display name."""
        key = name.lower()
        for model in self.models:
            if model.name.lower() == key:
                return model
        for model in self.models:
            if model.display_name.lower() == key:
                return model
        return None

    def names(self) -> List[str]:
        return [m.name for m in self.models]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "models": [m.to_dict() for m in self.models],
            "defaultModelName": self.default_model_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelRegistry":
        if not isinstance(data, dict):
            raise ValueError(f"Registry root must be an object, got {type(data).__name__}")
        models = data.get("models") or []
        if not isinstance(models, list):
            raise ValueError("Registry 'models' must be a list")
        return cls(
            models=[ModelDescriptor.from_dict(m) for m in models],
            default_model_name=data.get("defaultModelName") or "",
        )


# ============================================================================
# FILTER OPTIONS
# ============================================================================

def _normalize_formats(formats) -> FrozenSet[str]:
    result = set()
    for fmt in formats:
        fmt = str(fmt).lower().lstrip(".")
        result.update(config.FORMAT_ALIASES.get(fmt, (fmt,)))
    return frozenset(result)


@dataclass(frozen=True)
class FilterOptions:
    """
    Immutable scan configuration, built once per scan request.

    ``licenses`` and ``supported_formats`` are normalised to frozensets of
    lowercase strings; ``search_terms`` to a tuple.
    """
    min_downloads: int = config.DEFAULT_MIN_DOWNLOADS
    max_model_size_mb: int = config.DEFAULT_MAX_MODEL_SIZE_MB
    min_likes: int = 0
    max_models: int = 0
    exclude_archived: bool = True
    exclude_private: bool = True
    only_verified: bool = False
    prefer_native_format_labels: bool = True
    licenses: FrozenSet[str] = frozenset()
    search_terms: Tuple[str, ...] = ()
    supported_formats: FrozenSet[str] = frozenset(config.DEFAULT_SUPPORTED_FORMATS)
    sort_by: str = "downloads"
    sort_direction: str = "desc"
    max_days_since_update: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "licenses", frozenset(l.lower() for l in self.licenses))
        object.__setattr__(self, "search_terms", tuple(self.search_terms))
        object.__setattr__(self, "supported_formats", _normalize_formats(self.supported_formats))
        if self.sort_direction not in ("asc", "desc"):
            raise ValueError(f"sort_direction must be 'asc' or 'desc', got {self.sort_direction!r}")
        if self.max_models < 0:
            raise ValueError(f"max_models must not be negative, got {self.max_models}")


# ============================================================================
# CATALOG RECORDS
# ============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the catalog into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable catalog timestamp: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class CatalogEntry:
    """One model record from the catalog listing or detail endpoint."""
    id: str
    downloads: int = 0
    likes: int = 0
    tags: List[str] = field(default_factory=list)
    license: str = ""
    private: bool = False
    archived: bool = False
    verified: bool = False
    last_modified: Optional[datetime] = None
    author: str = ""
    description: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CatalogEntry":
        tags = [str(t) for t in (data.get("tags") or []) if t is not None]
        card = data.get("cardData") or {}

        license_name = data.get("license") or card.get("license") or ""
        if not license_name:
            for tag in tags:
                if tag.lower().startswith("license:"):
                    license_name = tag.split(":", 1)[1]
                    break
        if isinstance(license_name, list):
            license_name = ",".join(str(l) for l in license_name)

        return cls(
            id=data.get("id") or data.get("modelId") or "",
            downloads=int(data.get("downloads") or 0),
            likes=int(data.get("likes") or 0),
            tags=tags,
            license=str(license_name),
            private=bool(data.get("private", False)),
            archived=bool(data.get("archived", False) or data.get("disabled", False)),
            verified=bool(data.get("verified", False)),
            last_modified=parse_timestamp(data.get("lastModified") or data.get("last_modified")),
            author=data.get("author") or "",
            description=data.get("description") or card.get("description") or "",
        )


@dataclass(frozen=True)
class RemoteFile:
    """One entry of a catalog file tree."""
    path: str
    type: str = "file"
    size: Optional[int] = None

    @property
    def extension(self) -> str:
        return os.path.splitext(self.path)[1].lower().lstrip(".")


# ============================================================================
# TAGGING RESULTS
# ============================================================================

@dataclass
class TagResult:
    tag: str
    confidence: float
    source: str = ""
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TaggingResult:
    image_path: str
    tags: List[TagResult] = field(default_factory=list)
    method: str = ""
    success: bool = False
    error_message: Optional[str] = None
    processing_time: float = 0.0
