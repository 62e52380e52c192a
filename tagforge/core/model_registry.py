"""
Model Registry Persistence
==========================

Durable store of model descriptors and the default-model selection.

The registry is a single JSON document (``models`` plus ``defaultModelName``)
written atomically: the new content goes to a temporary file in the same
directory, is flushed to disk and then renamed over the old file, so a crash
mid-write never leaves a truncated registry behind.

``ModelManager`` owns the in-memory registry. Every mutation takes the
manager's lock and persists before returning.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from tagforge.core import config
from tagforge.core.errors import NotFoundError
from tagforge.core.models import ModelDescriptor, ModelRegistry

logger = logging.getLogger(__name__)


def load_registry(path) -> ModelRegistry:
    """
    Read a registry file.

    A missing, unreadable or malformed file yields an empty registry; the
    problem is logged and the broken file is left in place for inspection.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No model registry found at {path}, starting empty")
        return ModelRegistry()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        registry = ModelRegistry.from_dict(data)
    except OSError as e:
        logger.error(f"Model registry {path} could not be read: {e}")
        return ModelRegistry()
    except json.JSONDecodeError as e:
        logger.error(f"Model registry {path} is corrupted: {e}")
        return ModelRegistry()
    except (ValueError, TypeError, KeyError) as e:
        logger.error(f"Model registry {path} has an invalid structure: {e}")
        return ModelRegistry()

    logger.info(f"Loaded {len(registry.models)} models from {path}")
    return registry


def save_registry(registry: ModelRegistry, path):
    """Write the registry atomically (temp file + fsync + rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(registry.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    logger.debug(f"Saved {len(registry.models)} models to {path}")


class ModelManager:
    """
    Thread-safe facade over the persisted model registry.

    Args:
        registry_path: Location of the registry JSON file
        runtime: Optional inference runtime used by ``validate_model`` to
            check that a model actually opens
    """

    def __init__(self, registry_path, runtime=None):
        self.registry_path = Path(registry_path)
        self.runtime = runtime
        self._lock = threading.RLock()
        self._registry = load_registry(self.registry_path)

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    def _save(self):
        save_registry(self._registry, self.registry_path)

    def reload(self):
        with self._lock:
            self._registry = load_registry(self.registry_path)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_or_update(self, descriptor: ModelDescriptor) -> ModelDescriptor:
        """Insert a descriptor, or replace the one with the same name."""
        with self._lock:
            for index, existing in enumerate(self._registry.models):
                if existing.name.lower() == descriptor.name.lower():
                    self._registry.models[index] = descriptor
                    logger.info(f"Updated model: {descriptor.name}")
                    break
            else:
                self._registry.models.append(descriptor)
                logger.info(f"Added model: {descriptor.name}")
            self._save()
            return descriptor

    def remove(self, name: str) -> bool:
        """Remove a model by name. Returns False if no such model exists."""
        with self._lock:
            descriptor = self._registry.find(name)
            if descriptor is None:
                logger.warning(f"Cannot remove unknown model: {name}")
                return False
            self._registry.models.remove(descriptor)
            if self._registry.default_model_name.lower() == descriptor.name.lower():
                self._registry.default_model_name = ""
            self._save()
            logger.info(f"Removed model: {descriptor.name}")
            return True

    def set_enabled(self, name: str, enabled: bool) -> ModelDescriptor:
        with self._lock:
            descriptor = self._require(name)
            descriptor.is_enabled = enabled
            self._save()
            logger.info(f"Model {descriptor.name} {'enabled' if enabled else 'disabled'}")
            return descriptor

    def set_default(self, name: str) -> ModelDescriptor:
        """
        Make a model the default.

        Raises:
            NotFoundError: No model with that name is registered
        """
        with self._lock:
            descriptor = self._require(name)
            self._registry.default_model_name = descriptor.name
            self._save()
            logger.info(f"Default model set to {descriptor.name}")
            return descriptor

    def _require(self, name: str) -> ModelDescriptor:
        descriptor = self._registry.find(name)
        if descriptor is None:
            raise NotFoundError(f"Model not found: {name}")
        return descriptor

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_model(self, name: str) -> Optional[ModelDescriptor]:
        with self._lock:
            return self._registry.find(name)

    def get_all_models(self) -> List[ModelDescriptor]:
        with self._lock:
            return sorted(self._registry.models, key=lambda m: m.priority, reverse=True)

    def get_enabled_models(self) -> List[ModelDescriptor]:
        return [m for m in self.get_all_models() if m.is_enabled]

    def get_default_model(self) -> Optional[ModelDescriptor]:
        """The named default if it exists, otherwise the highest-priority enabled model."""
        with self._lock:
            if self._registry.default_model_name:
                descriptor = self._registry.find(self._registry.default_model_name)
                if descriptor is not None:
                    return descriptor
                logger.warning(f"Default model {self._registry.default_model_name} is not registered")
        enabled = self.get_enabled_models()
        return enabled[0] if enabled else None

    def validate_model(self, descriptor: ModelDescriptor) -> bool:
        """Check that a model's files exist and, with a runtime, that it opens."""
        reason = descriptor.unusable_reason()
        if reason:
            logger.warning(f"Model validation failed: {reason}")
            return False
        if self.runtime is None:
            return True

        try:
            session = self.runtime.open_session(descriptor.model_path)
        except Exception as e:
            logger.warning(f"Model validation failed for {descriptor.name}: {e}")
            return False
        try:
            return bool(session.inputs) and bool(session.outputs)
        finally:
            self.runtime.close_session(session)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_from_template(self, template_name: str, model_name: str, model_dir) -> ModelDescriptor:
        """
        Register a well-known ONNX model from its template.

        The model directory is expected to hold ``model.onnx`` and
        ``labels.txt``. The descriptor is enabled only when those files make
        it usable.

        Raises:
            NotFoundError: Unknown template name
        """
        template = config.MODEL_TEMPLATES.get(template_name)
        if template is None:
            raise NotFoundError(
                f"Unknown model template: {template_name} (available: {', '.join(config.MODEL_TEMPLATES)})"
            )

        model_dir = Path(model_dir)
        descriptor = ModelDescriptor(
            name=model_name,
            display_name=template["displayName"],
            description=template["description"],
            model_path=str(model_dir / config.CONVERTED_MODEL_FILENAME),
            labels_path=str(model_dir / config.CONVERTED_LABELS_FILENAME),
            priority=template["priority"],
            source=template["source"],
            license=template["license"],
            extra_metadata={"template": template_name},
        )
        descriptor.is_enabled = descriptor.is_usable()
        return self.add_or_update(descriptor)
