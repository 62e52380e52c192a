"""
Foreign Format Conversion
=========================

Converts foreign-format (PyTorch / safetensors) image classifiers to ONNX by
running a generated export script in an external Python runtime.

A conversion job moves through:

    NOT_CONVERTED -> CONVERTING -> CONVERTED | FAILED

Both end states are terminal; there is no automatic retry. Failures of any
step (no runtime, non-zero exit, missing or unloadable output, cancellation)
are reported as a FAILED result rather than raised, so callers can persist the
status and let the user retry.

Steps:
1. Probe candidate runtimes with ``--version``; the first that answers wins.
2. Check the export dependencies in that runtime and install missing ones
   (best effort; failures are logged only).
3. Write the export script to the scripts directory.
4. Run it with stdout/stderr captured.
5. Validate model.onnx (opens with at least one input and output) and
   labels.txt (at least one non-empty line).

Jobs are synchronous; callers that need them off the calling thread submit
them to a BackgroundWorker, which also keeps them from running in parallel.
"""

import logging
import os
import string
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from tagforge.core import config
from tagforge.core.errors import (
    ExternalProcessError,
    NotFoundError,
    OperationCancelled,
    TagForgeError,
    ValidationError,
)
from tagforge.core.models import (
    ConversionStatus,
    ModelDescriptor,
    ModelFormat,
    is_placeholder_labels,
    read_label_lines,
)
from tagforge.core.settings import ConversionSettings

logger = logging.getLogger(__name__)

# Poll interval while waiting on the conversion subprocess
_POLL_SECONDS = 0.5

CONVERSION_SCRIPT_TEMPLATE = string.Template('''\
# Generated by TagForge: export $model_id_literal to ONNX.
import os
import sys

MODEL_ID = $model_id_literal
SOURCE_PATH = $source_literal
OUTPUT_DIR = $output_literal
MODEL_FILENAME = $model_filename_literal
LABELS_FILENAME = $labels_filename_literal
IMAGE_WIDTH = $image_width
IMAGE_HEIGHT = $image_height
OPSET_VERSION = $opset_version
SYNTHETIC_LABEL_COUNT = $synthetic_label_count


def convert():
    import torch
    from transformers import AutoModelForImageClassification

    source = SOURCE_PATH if SOURCE_PATH and os.path.isdir(SOURCE_PATH) else MODEL_ID
    print(f"Loading model {source}...")
    model = AutoModelForImageClassification.from_pretrained(source)
    model.eval()

    class LogitsOnly(torch.nn.Module):
        def __init__(self, inner):
            super().__init__()
            self.inner = inner

        def forward(self, pixel_values):
            return self.inner(pixel_values=pixel_values).logits

    os.makedirs(OUTPUT_DIR, exist_ok=True)
    onnx_path = os.path.join(OUTPUT_DIR, MODEL_FILENAME)
    dummy_input = torch.randn(1, 3, IMAGE_HEIGHT, IMAGE_WIDTH)
    torch.onnx.export(
        LogitsOnly(model),
        dummy_input,
        onnx_path,
        export_params=True,
        opset_version=OPSET_VERSION,
        do_constant_folding=True,
        input_names=["input"],
        output_names=["output"],
        dynamic_axes={"input": {0: "batch_size"}, "output": {0: "batch_size"}},
    )
    print(f"Model converted successfully to {onnx_path}")

    id2label = getattr(model.config, "id2label", None) or {}
    if id2label:
        labels = [str(id2label.get(i, id2label.get(str(i), f"class_{i:04d}"))) for i in range(len(id2label))]
    else:
        count = getattr(model.config, "num_labels", 0) or SYNTHETIC_LABEL_COUNT
        labels = [f"class_{i:04d}" for i in range(count)]
        print("No id2label mapping found, writing placeholder labels")

    labels_path = os.path.join(OUTPUT_DIR, LABELS_FILENAME)
    with open(labels_path, "w", encoding="utf-8") as f:
        f.write("\\n".join(labels) + "\\n")
    print(f"Labels file created: {labels_path} ({len(labels)} labels)")


if __name__ == "__main__":
    try:
        convert()
    except Exception as e:
        print(f"Error converting model: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)
''')


@dataclass
class ConversionResult:
    """Outcome of one conversion job."""
    model_id: str
    status: ConversionStatus = ConversionStatus.NOT_CONVERTED
    model_path: str = ""
    labels_path: str = ""
    message: str = ""
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    synthetic_labels: bool = False

    @property
    def success(self) -> bool:
        return self.status == ConversionStatus.CONVERTED


def is_conversion_supported(model_id: str) -> bool:
    """True if the id names an architecture the export script is known to handle."""
    model_id_lower = model_id.lower()
    return any(pattern in model_id_lower for pattern in config.CONVERSION_SUPPORTED_PATTERNS)


def script_name_for(model_id: str) -> str:
    return f"convert_{model_id.replace('/', '_')}.py"


class ConversionOrchestrator:
    """
    Runs foreign-to-ONNX conversion jobs in an external Python runtime.

    Args:
        settings: Runtime preference, scripts directory and timeouts
        runtime: Inference runtime used to validate the exported model
    """

    def __init__(self, settings: Optional[ConversionSettings] = None, runtime=None):
        self.settings = settings or ConversionSettings()
        if runtime is None:
            from tagforge.core.inference_runtime import OnnxInferenceRuntime
            runtime = OnnxInferenceRuntime()
        self.runtime = runtime

    # ------------------------------------------------------------------
    # Runtime discovery and dependencies
    # ------------------------------------------------------------------

    def runtime_candidates(self) -> List[str]:
        candidates = []
        for candidate in (self.settings.runtime_executable, sys.executable) + tuple(config.RUNTIME_CANDIDATES):
            if candidate and candidate not in candidates:
                candidates.append(candidate)
        return candidates

    def _probe(self, executable: str) -> bool:
        try:
            completed = subprocess.run(
                [executable, "--version"],
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.settings.probe_timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Runtime candidate {executable} unavailable: {e}")
            return False
        if completed.returncode != 0:
            logger.debug(f"Runtime candidate {executable} exited with {completed.returncode}")
            return False
        version = (completed.stdout or completed.stderr or "").strip()
        logger.debug(f"Found Python runtime at {executable} ({version})")
        return True

    def find_runtime(self) -> str:
        """
        Return the first runtime executable that answers a version query.

        Raises:
            NotFoundError: No candidate responded
        """
        candidates = self.runtime_candidates()
        for candidate in candidates:
            if self._probe(candidate):
                return candidate
        raise NotFoundError(f"No Python runtime found for conversion (tried: {', '.join(candidates)})")

    def _module_available(self, executable: str, module: str) -> bool:
        try:
            completed = subprocess.run(
                [executable, "-c", f"import {module}"],
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=config.DEPENDENCY_CHECK_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not check module {module} in {executable}: {e}")
            return False
        return completed.returncode == 0

    def check_dependencies(self, executable: str) -> List[str]:
        """Return the conversion modules missing from the runtime."""
        modules = list(config.CONVERSION_DEPENDENCIES)
        if self._module_available(executable, ", ".join(modules)):
            return []
        missing = [m for m in modules if not self._module_available(executable, m)]
        logger.warning(f"Runtime {executable} is missing conversion packages: {', '.join(missing)}")
        return missing

    def install_dependencies(self, executable: str, modules: Sequence[str]):
        """Install missing packages one at a time. Failures are logged, not raised."""
        for module in modules:
            package = config.CONVERSION_DEPENDENCIES.get(module, module)
            logger.info(f"Installing {package} into {executable}...")
            try:
                completed = subprocess.run(
                    [executable, "-m", "pip", "install", package],
                    capture_output=True,
                    encoding="utf-8",
                    errors="replace",
                    timeout=config.DEPENDENCY_INSTALL_TIMEOUT_SECONDS,
                )
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"Installing {package} failed: {e}")
                continue
            if completed.returncode != 0:
                logger.warning(f"Installing {package} exited with {completed.returncode}: {(completed.stderr or '').strip()[-500:]}")
            else:
                logger.info(f"Installed {package}")

    # ------------------------------------------------------------------
    # Script and process
    # ------------------------------------------------------------------

    def write_script(
        self,
        model_id: str,
        source_model_path: str,
        output_dir: str,
        image_size: Tuple[int, int] = (config.DEFAULT_IMAGE_WIDTH, config.DEFAULT_IMAGE_HEIGHT)
    ) -> Path:
        scripts_dir = Path(self.settings.scripts_dir)
        scripts_dir.mkdir(parents=True, exist_ok=True)
        script_path = scripts_dir / script_name_for(model_id)

        script = CONVERSION_SCRIPT_TEMPLATE.substitute(
            model_id_literal=repr(model_id),
            source_literal=repr(os.path.abspath(source_model_path) if source_model_path else ""),
            output_literal=repr(os.path.abspath(output_dir)),
            model_filename_literal=repr(config.CONVERTED_MODEL_FILENAME),
            labels_filename_literal=repr(config.CONVERTED_LABELS_FILENAME),
            image_width=int(image_size[0]),
            image_height=int(image_size[1]),
            opset_version=config.ONNX_OPSET_VERSION,
            synthetic_label_count=config.SYNTHETIC_LABEL_COUNT,
        )
        script_path.write_text(script, encoding="utf-8")
        logger.debug(f"Created conversion script: {script_path}")
        return script_path

    def _run_process(
        self,
        command: List[str],
        stop_event: Optional[threading.Event] = None
    ) -> Tuple[int, str, str]:
        """
        Run a command to completion with captured output.

        Raises:
            OperationCancelled: stop_event was set; the process is terminated
            ExternalProcessError: The conversion timeout elapsed
        """
        logger.debug(f"Executing: {' '.join(command)}")
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
        )
        deadline = time.monotonic() + self.settings.conversion_timeout

        while True:
            try:
                stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
                return process.returncode, stdout or "", stderr or ""
            except subprocess.TimeoutExpired:
                if stop_event is not None and stop_event.is_set():
                    self._terminate(process)
                    raise OperationCancelled(f"Conversion process {command[-1]} cancelled")
                if time.monotonic() >= deadline:
                    self._terminate(process)
                    raise ExternalProcessError(
                        f"Conversion process {command[-1]} timed out after {self.settings.conversion_timeout}s"
                    )

    @staticmethod
    def _terminate(process: subprocess.Popen):
        process.terminate()
        try:
            process.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Conversion process {process.pid} did not terminate, killing it")
            process.kill()
            process.communicate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_output(self, model_path: str, labels_path: str):
        """
        Check the exported artifact pair and return the labels.

        Raises:
            ValidationError: A file is missing, the model does not open with at
                least one input and output, or the labels file is empty or not UTF-8
        """
        if not os.path.isfile(model_path):
            raise ValidationError(f"ONNX file missing after conversion: {model_path}")
        if not os.path.isfile(labels_path):
            raise ValidationError(f"Labels file missing after conversion: {labels_path}")

        try:
            session = self.runtime.open_session(model_path)
        except Exception as e:
            raise ValidationError(f"ONNX validation failed for {model_path}: {e}") from e
        try:
            if not session.inputs or not session.outputs:
                raise ValidationError(f"ONNX model has no inputs or outputs: {model_path}")
        finally:
            self.runtime.close_session(session)

        try:
            labels = read_label_lines(labels_path)
        except UnicodeDecodeError as e:
            raise ValidationError(f"Labels file is not valid UTF-8: {labels_path}: {e}") from e
        if not any(labels):
            raise ValidationError(f"Labels file is empty: {labels_path}")
        return labels

    @staticmethod
    def _remove_artifacts(*paths: Path):
        for path in paths:
            try:
                path.unlink()
                logger.debug(f"Removed conversion artifact {path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def convert(
        self,
        model_id: str,
        source_model_path: str,
        output_dir: str,
        stop_event: Optional[threading.Event] = None,
        image_size: Tuple[int, int] = (config.DEFAULT_IMAGE_WIDTH, config.DEFAULT_IMAGE_HEIGHT)
    ) -> ConversionResult:
        """
        Convert one model to ONNX.

        Args:
            model_id: Catalog id of the model
            source_model_path: Local directory with the downloaded model (the
                catalog id is used when it is not a directory)
            output_dir: Where model.onnx and labels.txt are written
            stop_event: Set to cancel; the subprocess is terminated
            image_size: Export input size (width, height)

        Returns:
            A ConversionResult whose status is CONVERTED or FAILED.
        """
        logger.info(f"Starting conversion to ONNX for model: {model_id}")
        result = ConversionResult(model_id=model_id, status=ConversionStatus.CONVERTING)
        output = Path(output_dir)
        model_path = output / config.CONVERTED_MODEL_FILENAME
        labels_path = output / config.CONVERTED_LABELS_FILENAME
        start_time = time.time()

        try:
            output.mkdir(parents=True, exist_ok=True)
            # Stale artifacts must never satisfy validation of a new run
            self._remove_artifacts(model_path, labels_path)

            executable = self.find_runtime()
            missing = self.check_dependencies(executable)
            if missing:
                if self.settings.install_missing:
                    self.install_dependencies(executable, missing)
                else:
                    logger.warning(f"Not installing missing packages ({', '.join(missing)}), conversion may fail")

            script_path = self.write_script(model_id, source_model_path, output_dir, image_size)
            exit_code, stdout, stderr = self._run_process([executable, str(script_path)], stop_event)
            result.exit_code, result.stdout, result.stderr = exit_code, stdout, stderr

            if stdout:
                logger.debug(f"Conversion output: {stdout.strip()}")
            if stderr:
                logger.warning(f"Conversion errors: {stderr.strip()}")
            if exit_code != 0:
                raise ExternalProcessError(
                    f"Conversion script for {model_id} exited with code {exit_code}",
                    returncode=exit_code,
                    stderr=stderr,
                )

            labels = self.validate_output(str(model_path), str(labels_path))
        except (TagForgeError, OSError, ValueError, subprocess.SubprocessError) as e:
            result.status = ConversionStatus.FAILED
            result.message = str(e)
            self._remove_artifacts(model_path, labels_path)
            logger.error(f"❌ Conversion of {model_id} failed: {type(e).__name__}: {e}")
            return result

        result.status = ConversionStatus.CONVERTED
        result.model_path = str(model_path)
        result.labels_path = str(labels_path)
        result.synthetic_labels = is_placeholder_labels(labels)
        result.message = f"Converted {model_id} in {time.time() - start_time:.1f}s"
        if result.synthetic_labels:
            logger.warning(f"{model_id} has no class mapping; converted with placeholder labels")
        logger.info(f"✅ Successfully converted {model_id} to ONNX format and validated files")
        return result

    def convert_descriptor(
        self,
        descriptor: ModelDescriptor,
        source_model_path: str,
        output_dir: str,
        stop_event: Optional[threading.Event] = None
    ) -> ConversionResult:
        """
        Convert the model behind a descriptor and update the descriptor in place.

        The descriptor passes through CONVERTING and ends CONVERTED (pointing at
        the ONNX artifacts) or FAILED. The caller persists it afterwards.
        """
        model_id = descriptor.extra_metadata.get("huggingface_id") or descriptor.display_name or descriptor.name
        descriptor.conversion_status = ConversionStatus.CONVERTING

        result = self.convert(
            model_id,
            source_model_path,
            output_dir,
            stop_event=stop_event,
            image_size=(descriptor.image_width, descriptor.image_height),
        )

        descriptor.conversion_status = result.status
        if result.success:
            descriptor.model_path = result.model_path
            descriptor.labels_path = result.labels_path
            descriptor.model_format = ModelFormat.NATIVE
            descriptor.extra_metadata["synthetic_labels"] = result.synthetic_labels
            descriptor.extra_metadata.pop("conversion_error", None)
            if result.synthetic_labels:
                descriptor.is_enabled = False
        else:
            descriptor.extra_metadata["conversion_error"] = result.message
        return result
