"""
Catalog Model Downloads
=======================

Downloads the artifacts of a catalog model into the local models directory
and turns them into a registry descriptor.

For native (ONNX) models this fetches the model file and its label file. For
foreign formats it also fetches the configuration files the conversion script
needs to rebuild the model offline. Models that ship without a label file get
a synthetic ``class_NNNN`` placeholder file; such models are registered
disabled because placeholder labels make poor tags.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from tagforge.core import config
from tagforge.core.catalog_client import CatalogClient, ProgressCallback
from tagforge.core.catalog_scanner import descriptor_name
from tagforge.core.errors import NotFoundError, OperationCancelled
from tagforge.core.model_filter import find_labels_file, find_model_file, model_format_for
from tagforge.core.models import (
    CatalogEntry,
    ConversionStatus,
    ModelDescriptor,
    ModelFormat,
    is_placeholder_labels,
    read_label_lines,
    write_synthetic_labels,
)

logger = logging.getLogger(__name__)


@dataclass
class DownloadResult:
    model_id: str
    target_dir: str
    model_path: str
    labels_path: str
    model_format: ModelFormat
    synthetic_labels: bool = False


def format_size(size_bytes: int) -> str:
    """Format bytes as a human-readable string."""
    if size_bytes == 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    i = 0
    size = float(size_bytes)
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{size:.1f} {units[i]}"


class ModelDownloader:
    """
    Fetches catalog model artifacts to ``models_dir/<name>``.

    Args:
        client: CatalogClient used for file listings and streaming downloads
        models_dir: Root directory for downloaded models
        runtime: Optional inference runtime used by validate_downloaded_model
    """

    def __init__(self, client: CatalogClient, models_dir: str = str(config.MODELS_DIR), runtime=None):
        self.client = client
        self.models_dir = Path(models_dir)
        self.runtime = runtime

    def target_dir_for(self, model_id: str) -> Path:
        return self.models_dir / descriptor_name(model_id)

    def download(
        self,
        model_id: str,
        target_dir: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> DownloadResult:
        """
        Download one model.

        Raises:
            NotFoundError: The model or a compatible model file does not exist
            NetworkError: A request or transfer failed
            OperationCancelled: stop_event was set
        """
        logger.info(f"🚀 Starting download of catalog model: {model_id}")
        files = self.client.get_model_files(model_id)
        if not files:
            raise NotFoundError(f"No files found for model {model_id}")

        model_file = find_model_file(files)
        if model_file is None:
            raise NotFoundError(f"No compatible model file found for model {model_id} (files: {', '.join(f.path for f in files)})")
        labels_file = find_labels_file(files)
        model_format = model_format_for(model_file)

        total = sum(f.size or 0 for f in files if f in (model_file, labels_file))
        logger.info(f"📦 {model_id}: model file {model_file.path} ({model_format.value}), approx. {format_size(total)}")

        destination = Path(target_dir) if target_dir else self.target_dir_for(model_id)
        destination.mkdir(parents=True, exist_ok=True)

        to_fetch = [model_file.path]
        if labels_file is not None:
            to_fetch.append(labels_file.path)
        if model_format == ModelFormat.FOREIGN:
            available = {f.path for f in files}
            to_fetch.extend(name for name in config.FOREIGN_SUPPORT_FILES if name in available)

        for filename in to_fetch:
            if stop_event is not None and stop_event.is_set():
                raise OperationCancelled(f"Download of {model_id} cancelled")
            local_path = destination / os.path.basename(filename)
            self.client.download_file(
                self.client.file_url(model_id, filename),
                str(local_path),
                stop_event=stop_event,
                progress_callback=progress_callback,
            )

        synthetic = False
        if labels_file is not None:
            labels_path = destination / os.path.basename(labels_file.path)
        else:
            labels_path = destination / config.CONVERTED_LABELS_FILENAME
            write_synthetic_labels(str(labels_path))
            synthetic = True
            logger.warning(f"{model_id} has no labels file, wrote {config.SYNTHETIC_LABEL_COUNT} placeholder labels")

        logger.info(f"✅ Downloaded {model_id} to {destination}")
        return DownloadResult(
            model_id=model_id,
            target_dir=str(destination),
            model_path=str(destination / os.path.basename(model_file.path)),
            labels_path=str(labels_path),
            model_format=model_format,
            synthetic_labels=synthetic,
        )

    def download_many(
        self,
        model_ids: Iterable[str],
        stop_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[str, int, int], None]] = None
    ) -> List[DownloadResult]:
        """Download several models; a failed model is logged and skipped."""
        results = []
        for model_id in model_ids:
            if stop_event is not None and stop_event.is_set():
                logger.info("Batch download cancelled")
                break
            callback = None
            if progress_callback:
                callback = lambda done, total, mid=model_id: progress_callback(mid, done, total)
            try:
                results.append(self.download(model_id, stop_event=stop_event, progress_callback=callback))
            except OperationCancelled:
                logger.info(f"Download of {model_id} cancelled")
                break
            except Exception as e:
                logger.error(f"Failed to download {model_id}: {type(e).__name__}: {e}")
        return results

    def validate_downloaded_model(self, model_id: str, model_dir: str) -> bool:
        """
        Check a downloaded native model: an ONNX file and a label file must be
        present and the model must open in the inference runtime.
        """
        logger.info(f"Validating downloaded model: {model_id}")
        directory = Path(model_dir)
        onnx_files = sorted(directory.glob("*.onnx"))
        label_files = sorted(directory.glob("*.txt"))
        if not onnx_files:
            logger.warning(f"No ONNX file found in {directory}")
            return False
        if not label_files:
            logger.warning(f"No labels file found in {directory}")
            return False

        labels = read_label_lines(str(label_files[0]))
        if not any(labels):
            logger.warning(f"Labels file is empty: {label_files[0]}")
            return False

        if self.runtime is not None:
            try:
                session = self.runtime.open_session(str(onnx_files[0]))
                self.runtime.close_session(session)
            except Exception as e:
                logger.error(f"Model {model_id} failed to open: {e}", exc_info=True)
                return False

        logger.info(f"Model validation successful: {model_id} with {len(labels)} labels")
        return True

    def create_descriptor_from_downloaded(
        self,
        model_id: str,
        model_dir: str,
        detail: Optional[CatalogEntry] = None,
        result: Optional[DownloadResult] = None
    ) -> ModelDescriptor:
        """
        Build a registry descriptor pointing at downloaded artifacts.

        Native models with real labels are enabled immediately. Foreign models
        wait for conversion, and models with placeholder labels stay disabled.
        """
        directory = Path(model_dir)
        if result is not None:
            model_path, labels_path, model_format = result.model_path, result.labels_path, result.model_format
        else:
            onnx_files = sorted(directory.glob("*.onnx"))
            label_files = sorted(directory.glob("*.txt"))
            model_path = str(onnx_files[0]) if onnx_files else ""
            labels_path = str(label_files[0]) if label_files else ""
            model_format = ModelFormat.NATIVE

        placeholder = bool(labels_path) and os.path.isfile(labels_path) and is_placeholder_labels(read_label_lines(labels_path))
        enabled = model_format == ModelFormat.NATIVE and bool(model_path) and not placeholder

        return ModelDescriptor(
            name=descriptor_name(model_id),
            display_name=model_id,
            description=(detail.description if detail and detail.description else f"Downloaded from {config.CATALOG_SOURCE_NAME}: {model_id}"),
            model_path=model_path,
            labels_path=labels_path,
            source=config.CATALOG_SOURCE_NAME,
            license=(detail.license if detail and detail.license else "Unknown"),
            priority=100,
            is_enabled=enabled,
            model_format=model_format,
            conversion_status=ConversionStatus.NOT_CONVERTED,
            extra_metadata={
                "huggingface_id": model_id,
                "downloads": detail.downloads if detail else 0,
                "likes": detail.likes if detail else 0,
                "synthetic_labels": placeholder,
            },
        )
