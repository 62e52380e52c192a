"""
ONNX Runtime Adapter
====================

The single boundary between the lifecycle engine and the inference runtime.
Everything that depends on the shape of a particular model (input layout,
output cardinality, logits vs. probabilities) is resolved here so the rest of
the code only sees:

- ``open_session(path) -> RuntimeSession`` with declared inputs and outputs
- ``preprocess(image_path, width, height) -> tensor``
- ``run(session, tensor) -> List[float]``
- ``close_session(session)``
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import numpy as np
import onnxruntime as ort
from PIL import Image, UnidentifiedImageError

from tagforge.core import config
from tagforge.core.errors import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class RuntimeSession:
    """An opened model plus the metadata the tagging path needs."""
    path: str
    handle: Any
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    input_shape: List[Any] = field(default_factory=list)

    @property
    def channels_last(self) -> bool:
        """True for NHWC inputs (last dimension is the 3 colour channels)."""
        return len(self.input_shape) == 4 and self.input_shape[-1] == 3 and self.input_shape[1] != 3


def softmax(values: np.ndarray) -> np.ndarray:
    shifted = values - np.max(values)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


def to_probabilities(values: np.ndarray) -> np.ndarray:
    """Apply softmax unless the vector already looks like a probability distribution."""
    if values.size == 0:
        return values
    in_range = np.all(values >= 0.0) and np.all(values <= 1.0)
    if in_range and abs(float(np.sum(values)) - 1.0) < 1e-3:
        return values
    return softmax(values)


class OnnxInferenceRuntime:
    """
    Inference runtime capability backed by onnxruntime.

    Args:
        providers: Execution providers in preference order. Defaults to CUDA
            when available, then CPU.
    """

    def __init__(self, providers: Optional[Sequence[str]] = None):
        if providers is None:
            available = ort.get_available_providers()
            providers = [p for p in ("CUDAExecutionProvider", "CPUExecutionProvider") if p in available]
        self.providers = list(providers) or ["CPUExecutionProvider"]
        logger.debug(f"ONNX Runtime providers: {self.providers}")

    def open_session(self, path: str) -> RuntimeSession:
        """
        Load a model file into an inference session.

        Raises:
            NotFoundError: The model file does not exist
            InvalidStateError: The model does not load, or declares no inputs
                or no outputs
        """
        # onnxruntime reports a missing file with its own exception type
        if not os.path.isfile(path):
            raise NotFoundError(f"Model file not found: {path}")
        try:
            handle = ort.InferenceSession(path, providers=self.providers)
            inputs = handle.get_inputs()
            outputs = handle.get_outputs()
        except Exception as e:
            raise InvalidStateError(f"Failed to load ONNX model {path}: {e}") from e

        if not inputs or not outputs:
            raise InvalidStateError(f"ONNX model has no inputs or outputs: {path}")

        session = RuntimeSession(
            path=path,
            handle=handle,
            inputs=[i.name for i in inputs],
            outputs=[o.name for o in outputs],
            input_shape=list(inputs[0].shape or []),
        )
        logger.debug(f"ONNX session created for {path} - inputs: {session.inputs}, outputs: {session.outputs}")
        return session

    def preprocess(self, image_path: str, width: int, height: int, channels_last: bool = False) -> np.ndarray:
        """
        Load an image as a normalised float32 batch of one (NCHW unless channels_last).

        Raises:
            NotFoundError: The image file does not exist
            ValidationError: The file is not a readable image
        """
        try:
            with Image.open(image_path) as img:
                rgb = img.convert("RGB").resize((width, height), Image.Resampling.BILINEAR)
                array = np.asarray(rgb, dtype=np.float32) / 255.0
        except FileNotFoundError as e:
            raise NotFoundError(f"Image not found: {image_path}") from e
        except UnidentifiedImageError as e:
            raise ValidationError(f"Cannot identify image file {image_path}") from e
        except (OSError, ValueError) as e:
            raise ValidationError(f"Failed to read image {image_path}: {e}") from e

        array = (array - np.array(config.IMAGENET_MEAN, dtype=np.float32)) / np.array(config.IMAGENET_STD, dtype=np.float32)
        if not channels_last:
            array = array.transpose(2, 0, 1)  # HWC to CHW
        return np.expand_dims(array, axis=0).astype(np.float32)

    def prepare_input(self, session: RuntimeSession, image_path: str, width: int, height: int) -> np.ndarray:
        return self.preprocess(image_path, width, height, channels_last=session.channels_last)

    def run(self, session: RuntimeSession, tensor: np.ndarray) -> List[float]:
        """
        Run the session and return the class scores of the first output.

        Raises:
            InvalidStateError: Inference failed or the model produced no scores
        """
        try:
            outputs = session.handle.run(None, {session.inputs[0]: tensor})
        except Exception as e:
            raise InvalidStateError(f"Inference failed for {session.path}: {e}") from e
        if not outputs:
            raise InvalidStateError(f"Model {session.path} returned no outputs")
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size == 0:
            raise InvalidStateError(f"Model {session.path} returned empty predictions")
        return to_probabilities(scores).tolist()

    def close_session(self, session: RuntimeSession):
        # onnxruntime releases native resources when the last reference goes
        session.handle = None
