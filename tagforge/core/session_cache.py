"""
Inference Session Cache
=======================

Lazily loads inference sessions and label sets per model name and serves
them to concurrent callers.

Guarantees:
- At most one load per model name. The first caller builds the session under
  a per-name load lock; concurrent callers for the same name wait on that lock
  and then see the published entry. Callers for different names only share
  the brief map lock.
- An entry is published only after both the session and the labels loaded,
  so no caller ever observes a half-built entry.

The cache is an explicitly constructed component: create it, inject it where
inference is needed, and call ``dispose()`` after in-flight work is done.
"""

import logging
import os
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from tagforge.core import config
from tagforge.core.errors import InvalidStateError, NotFoundError, OperationCancelled
from tagforge.core.models import ModelDescriptor, read_label_lines
from tagforge.utils.concurrency import DaemonThreadPoolExecutor

logger = logging.getLogger(__name__)

Prediction = Tuple[str, float]


@dataclass(frozen=True)
class SessionCacheEntry:
    session: object
    labels: Tuple[str, ...]


def rank_predictions(
    scores: List[float],
    labels: List[str],
    threshold: float = 0.0,
    max_tags: Optional[int] = None,
    model_name: str = ""
) -> List[Prediction]:
    """
    Pair scores with labels by index, rank and filter them.

    Scores without a label are named ``Unknown_{index}``; a length mismatch is
    logged as a warning rather than raised because converted models sometimes
    report a different output cardinality.
    """
    if len(scores) != len(labels):
        logger.warning(f"Model {model_name or '<unnamed>'} returned {len(scores)} scores for {len(labels)} labels, "
                       f"pairing by position")

    predictions = [
        (labels[index] if index < len(labels) else config.UNKNOWN_LABEL_FORMAT.format(index), float(score))
        for index, score in enumerate(scores)
    ]
    predictions.sort(key=lambda p: p[1], reverse=True)
    predictions = [p for p in predictions if p[1] >= threshold]
    if max_tags is not None:
        predictions = predictions[:max_tags]
    return predictions


class InferenceSessionCache:
    """
    Mutex-guarded map from model name to a loaded (session, labels) pair.

    Args:
        runtime: Inference runtime capability (``open_session``, ``run``,
            ``prepare_input``/``preprocess``, ``close_session``)
        executor: Executor for ``infer_async``; a daemon pool is created
            and owned by the cache when omitted
        max_workers: Size of the owned pool
    """

    def __init__(self, runtime, executor=None, max_workers: int = config.DEFAULT_INFERENCE_WORKERS):
        self.runtime = runtime
        self._lock = threading.Lock()
        self._entries: Dict[str, SessionCacheEntry] = {}
        self._load_locks: Dict[str, threading.Lock] = {}
        self._disposed = False
        self._owns_executor = executor is None
        self._executor = executor or DaemonThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="InferenceWorker")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get_or_create(self, descriptor: ModelDescriptor) -> SessionCacheEntry:
        """Return the cached entry for a model, loading it on first use."""
        name = descriptor.name
        with self._lock:
            if self._disposed:
                raise InvalidStateError(f"Session cache is disposed, cannot load {name}")
            entry = self._entries.get(name)
            if entry is not None:
                return entry
            load_lock = self._load_locks.setdefault(name, threading.Lock())

        with load_lock:
            with self._lock:
                entry = self._entries.get(name)
                if entry is not None:
                    logger.debug(f"Model {name} already loaded, skipping")
                    return entry

            entry = self._load(descriptor)

            with self._lock:
                if self._disposed:
                    self.runtime.close_session(entry.session)
                    raise InvalidStateError(f"Session cache was disposed while loading {name}")
                self._entries[name] = entry
                self._load_locks.pop(name, None)
            logger.info(f"Model loaded successfully: {name} with {len(entry.labels)} labels")
            return entry

    def ensure_loaded(self, descriptor: ModelDescriptor):
        self.get_or_create(descriptor)

    def is_loaded(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def _load(self, descriptor: ModelDescriptor) -> SessionCacheEntry:
        name = descriptor.name
        logger.info(f"Loading model: {name}")
        logger.debug(f"Model path: {descriptor.model_path}, labels path: {descriptor.labels_path}")

        for kind, path in (("Model", descriptor.model_path), ("Labels", descriptor.labels_path)):
            if not path:
                raise NotFoundError(f"{kind} path is not set for model {name}")
            if not os.path.isfile(path):
                raise NotFoundError(f"{kind} file not found for model {name}: {path}")

        session = self.runtime.open_session(descriptor.model_path)
        try:
            try:
                labels = read_label_lines(descriptor.labels_path)
            except (OSError, UnicodeDecodeError) as e:
                raise InvalidStateError(f"Labels file unreadable for model {name}: {descriptor.labels_path}: {e}") from e
            if not any(labels):
                raise InvalidStateError(f"Labels file is empty for model {name}: {descriptor.labels_path}")
        except BaseException:
            self.runtime.close_session(session)
            raise

        return SessionCacheEntry(session=session, labels=tuple(labels))

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def infer(
        self,
        descriptor: ModelDescriptor,
        image_path: str,
        stop_event: Optional[threading.Event] = None
    ) -> List[Prediction]:
        """
        Classify one image with a model, loading it on first use.

        Returns:
            (label, score) pairs sorted by score, filtered by the descriptor's
            confidence threshold and truncated to its max_tags.
        """
        if stop_event is not None and stop_event.is_set():
            raise OperationCancelled(f"Inference with {descriptor.name} cancelled")

        entry = self.get_or_create(descriptor)
        if hasattr(self.runtime, "prepare_input"):
            tensor = self.runtime.prepare_input(entry.session, image_path, descriptor.image_width, descriptor.image_height)
        else:
            tensor = self.runtime.preprocess(image_path, descriptor.image_width, descriptor.image_height)

        if stop_event is not None and stop_event.is_set():
            raise OperationCancelled(f"Inference with {descriptor.name} cancelled")

        scores = self.runtime.run(entry.session, tensor)
        if not scores:
            raise InvalidStateError(f"Model {descriptor.name} returned empty predictions")

        predictions = rank_predictions(
            scores,
            list(entry.labels),
            threshold=descriptor.confidence_threshold,
            max_tags=descriptor.max_tags,
            model_name=descriptor.name,
        )
        for label, score in predictions:
            logger.debug(f"  - {label}: {score:.4f}")
        return predictions

    def infer_async(
        self,
        descriptor: ModelDescriptor,
        image_path: str,
        stop_event: Optional[threading.Event] = None
    ) -> Future:
        """Run ``infer`` on a worker thread and return its Future."""
        with self._lock:
            if self._disposed:
                raise InvalidStateError(f"Session cache is disposed, cannot run {descriptor.name}")
        return self._executor.submit(self.infer, descriptor, image_path, stop_event)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self):
        """Release every cached session. The caller sequences this after in-flight work."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            entries = list(self._entries.items())
            self._entries.clear()
            self._load_locks.clear()

        for name, entry in entries:
            try:
                self.runtime.close_session(entry.session)
            except Exception as e:
                logger.warning(f"Failed to release session for {name}: {e}")

        if self._owns_executor:
            self._executor.shutdown(wait=False)
        logger.info(f"Session cache disposed ({len(entries)} sessions released)")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()
