"""
Image tagging on top of the model registry and the session cache.
"""

import logging
import os
import threading
import time
from typing import Dict, List, Optional, Sequence

from tagforge.core import config
from tagforge.core.errors import InvalidStateError, NotFoundError, TagForgeError, ValidationError
from tagforge.core.model_registry import ModelManager
from tagforge.core.models import ModelDescriptor, TaggingResult, TagResult
from tagforge.core.session_cache import InferenceSessionCache

logger = logging.getLogger(__name__)


def is_supported(image_path: str) -> bool:
    """True for an existing file with a supported image extension."""
    if not image_path or not os.path.isfile(image_path):
        return False
    return os.path.splitext(image_path)[1].lower() in config.SUPPORTED_IMAGE_EXTENSIONS


class TaggingService:
    """
    Tags images with registered models.

    Args:
        manager: Model registry facade
        cache: Session cache used for inference
    """

    def __init__(self, manager: ModelManager, cache: InferenceSessionCache):
        self.manager = manager
        self.cache = cache

    is_supported = staticmethod(is_supported)

    def _check_image(self, image_path: str):
        if not os.path.isfile(image_path):
            raise NotFoundError(f"Image not found: {image_path}")
        if not is_supported(image_path):
            raise ValidationError(f"Unsupported image format: {image_path}")

    def _resolve(self, model_name: str) -> ModelDescriptor:
        descriptor = self.manager.get_model(model_name)
        if descriptor is None:
            raise NotFoundError(f"Model not found: {model_name}")
        if not descriptor.is_enabled:
            raise InvalidStateError(f"Model {descriptor.name} is disabled")
        reason = descriptor.unusable_reason()
        if reason:
            raise InvalidStateError(reason)
        return descriptor

    def tag_image(self, image_path: str, stop_event: Optional[threading.Event] = None) -> TaggingResult:
        """Tag an image with the default model."""
        descriptor = self.manager.get_default_model()
        if descriptor is None:
            raise NotFoundError("No default model configured and no model is enabled")
        return self.tag_image_with_model(image_path, descriptor.name, stop_event)

    def tag_image_with_model(
        self,
        image_path: str,
        model_name: str,
        stop_event: Optional[threading.Event] = None
    ) -> TaggingResult:
        """
        Tag an image with one model.

        Raises:
            NotFoundError: Unknown model, or the image does not exist
            InvalidStateError: The model is disabled or not usable
            ValidationError: The image format is not supported
        """
        self._check_image(image_path)
        descriptor = self._resolve(model_name)

        start_time = time.time()
        predictions = self.cache.infer(descriptor, image_path, stop_event)
        tags = [TagResult(tag=label, confidence=score, source=descriptor.name) for label, score in predictions]
        elapsed = time.time() - start_time

        logger.info(f"Tagged {os.path.basename(image_path)} with {descriptor.name}: {len(tags)} tags in {elapsed:.2f}s")
        return TaggingResult(
            image_path=image_path,
            tags=tags,
            method=descriptor.name,
            success=True,
            processing_time=elapsed,
        )

    def tag_image_with_models(
        self,
        image_path: str,
        model_names: Sequence[str],
        stop_event: Optional[threading.Event] = None
    ) -> TaggingResult:
        """
        Tag an image with several models and merge the results.

        A model that fails is logged and skipped. Tags reported by more than one
        model keep the highest confidence. The result is unsuccessful only when
        every model failed.
        """
        self._check_image(image_path)
        start_time = time.time()

        merged: Dict[str, TagResult] = {}
        errors: List[str] = []
        used: List[str] = []
        for name in model_names:
            try:
                result = self.tag_image_with_model(image_path, name, stop_event)
            except TagForgeError as e:
                logger.warning(f"Model {name} failed on {image_path}: {e}")
                errors.append(f"{name}: {e}")
                continue
            used.append(name)
            for tag in result.tags:
                key = tag.tag.lower()
                if key not in merged or tag.confidence > merged[key].confidence:
                    merged[key] = tag

        tags = sorted(merged.values(), key=lambda t: t.confidence, reverse=True)
        return TaggingResult(
            image_path=image_path,
            tags=tags,
            method="+".join(used),
            success=bool(used),
            error_message="; ".join(errors) or None,
            processing_time=time.time() - start_time,
        )
