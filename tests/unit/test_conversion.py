"""
Unit tests for the conversion orchestrator state machine.

The external runtime is simulated by patching subprocess: ``run`` answers the
version probe and dependency checks, ``Popen`` stands in for the conversion
script and optionally writes artifacts like a real export would.
"""

import sys
import os
import subprocess
import tempfile
import threading
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from tagforge.core.conversion import ConversionOrchestrator, is_conversion_supported, script_name_for
from tagforge.core.models import ConversionStatus, ModelDescriptor, ModelFormat
from tagforge.core.settings import ConversionSettings


def _completed(returncode=0, stdout="Python 3.11.4", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _runtime():
    runtime = MagicMock()
    runtime.open_session.return_value = MagicMock(inputs=["input"], outputs=["output"])
    return runtime


class ConversionTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.output_dir = os.path.join(self.tmp.name, "acme-resnet-50")
        self.model_path = os.path.join(self.output_dir, "model.onnx")
        self.labels_path = os.path.join(self.output_dir, "labels.txt")
        self.settings = ConversionSettings(scripts_dir=os.path.join(self.tmp.name, "scripts"))
        self.runtime = _runtime()
        self.orchestrator = ConversionOrchestrator(self.settings, runtime=self.runtime)

        run_patcher = patch("tagforge.core.conversion.subprocess.run", return_value=_completed())
        self.mock_run = run_patcher.start()
        self.addCleanup(run_patcher.stop)
        popen_patcher = patch("tagforge.core.conversion.subprocess.Popen")
        self.mock_popen = popen_patcher.start()
        self.addCleanup(popen_patcher.stop)

    def tearDown(self):
        self.tmp.cleanup()

    def _write(self, model=True, labels=True, label_lines=("cat", "dog")):
        os.makedirs(self.output_dir, exist_ok=True)
        if model:
            with open(self.model_path, "wb") as f:
                f.write(b"onnx-bytes")
        if labels:
            with open(self.labels_path, "w", encoding="utf-8") as f:
                f.write("\n".join(label_lines) + "\n")

    def _script(self, returncode, write=None):
        def factory(command, **kwargs):
            if write is not None:
                write()
            process = MagicMock()
            process.communicate.return_value = ("exporting", "" if returncode == 0 else "Traceback: boom")
            process.returncode = returncode
            return process
        self.mock_popen.side_effect = factory


class TestConversionStateMachine(ConversionTestCase):
    def test_exit_code_one_fails_and_removes_partial_output(self):
        self._script(1, write=lambda: self._write(labels=False))

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Traceback", result.stderr)
        self.assertFalse(os.path.exists(self.model_path))

    def test_exit_zero_with_missing_output_fails(self):
        self._script(0)

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertIn("missing", result.message)

    def test_stale_artifacts_do_not_satisfy_validation(self):
        self._write()
        self._script(0)

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertFalse(os.path.exists(self.model_path))

    def test_successful_conversion(self):
        self._script(0, write=self._write)

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.CONVERTED)
        self.assertEqual(result.model_path, self.model_path)
        self.assertEqual(result.labels_path, self.labels_path)
        self.assertFalse(result.synthetic_labels)
        self.runtime.open_session.assert_called_once_with(self.model_path)
        self.runtime.close_session.assert_called_once()

        command = self.mock_popen.call_args.args[0]
        script_path = os.path.join(self.settings.scripts_dir, "convert_acme_resnet-50.py")
        self.assertEqual(command[-1], script_path)
        with open(script_path, encoding="utf-8") as f:
            script = f.read()
        self.assertIn("MODEL_ID = 'acme/resnet-50'", script)
        self.assertIn("OPSET_VERSION = 11", script)
        self.assertIn('input_names=["input"]', script)

    def test_unloadable_model_fails(self):
        self._script(0, write=self._write)
        self.runtime.open_session.side_effect = RuntimeError("invalid protobuf")

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertIn("invalid protobuf", result.message)

    def test_empty_labels_fail(self):
        self._script(0, write=lambda: self._write(label_lines=("", "")))

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)

    def test_non_utf8_labels_fail(self):
        def write():
            self._write(labels=False)
            with open(self.labels_path, "wb") as f:
                f.write(b"\xff\xfe cat\n")
        self._script(0, write=write)

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertIn("UTF-8", result.message)
        self.assertFalse(os.path.exists(self.labels_path))

    def test_output_decode_error_fails(self):
        process = MagicMock()
        process.communicate.side_effect = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        self.mock_popen.side_effect = None
        self.mock_popen.return_value = process

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)

    def test_output_decoded_leniently(self):
        self._script(0, write=self._write)

        self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        kwargs = self.mock_popen.call_args.kwargs
        self.assertEqual(kwargs["encoding"], "utf-8")
        self.assertEqual(kwargs["errors"], "replace")

    def test_placeholder_labels_flagged(self):
        self._script(0, write=lambda: self._write(label_lines=("class_0000", "class_0001")))

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertTrue(result.success)
        self.assertTrue(result.synthetic_labels)

    def test_no_runtime(self):
        self.mock_run.side_effect = FileNotFoundError("not found")

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertIn("No Python runtime", result.message)
        self.mock_popen.assert_not_called()

    def test_timeout_fails(self):
        self.settings.conversion_timeout = 0
        process = MagicMock()
        terminated = []
        process.terminate.side_effect = lambda: terminated.append(True)

        def communicate(timeout=None):
            if terminated:
                return "", ""
            raise subprocess.TimeoutExpired("convert", timeout)

        process.communicate.side_effect = communicate
        self.mock_popen.return_value = process

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertIn("timed out", result.message)
        process.terminate.assert_called_once()

    def test_cancel_terminates_process(self):
        process = MagicMock()
        terminated = []
        process.terminate.side_effect = lambda: terminated.append(True)

        def communicate(timeout=None):
            if terminated:
                return "", ""
            raise subprocess.TimeoutExpired("convert", timeout)

        process.communicate.side_effect = communicate
        self.mock_popen.return_value = process
        stop_event = threading.Event()
        stop_event.set()

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir, stop_event=stop_event)

        self.assertEqual(result.status, ConversionStatus.FAILED)
        self.assertIn("cancelled", result.message)
        process.terminate.assert_called_once()


class TestRuntimeAndDependencies(ConversionTestCase):
    def test_configured_runtime_probed_first(self):
        self.settings.runtime_executable = "/opt/py/bin/python"
        self.assertEqual(self.orchestrator.runtime_candidates()[0], "/opt/py/bin/python")
        self.assertEqual(self.orchestrator.find_runtime(), "/opt/py/bin/python")

    def test_falls_back_to_next_candidate(self):
        def run(command, **kwargs):
            if command[0] == sys.executable:
                raise OSError("broken interpreter")
            return _completed()
        self.mock_run.side_effect = run

        self.assertNotEqual(self.orchestrator.find_runtime(), sys.executable)

    def test_missing_dependencies_installed(self):
        def run(command, **kwargs):
            if command[1] == "-c":
                return _completed(returncode=0 if command[2] == "import onnx" else 1)
            return _completed()
        self.mock_run.side_effect = run

        missing = self.orchestrator.check_dependencies("python3")
        self.assertEqual(missing, ["torch", "transformers"])

        self.orchestrator.install_dependencies("python3", missing)
        pip_calls = [c.args[0] for c in self.mock_run.call_args_list if c.args[0][1:3] == ["-m", "pip"]]
        self.assertEqual([c[-1] for c in pip_calls], ["torch", "transformers"])

    def test_install_skipped_when_disabled(self):
        self.settings.install_missing = False
        self._script(0, write=self._write)
        self.mock_run.side_effect = lambda command, **kwargs: _completed(returncode=1 if command[1] == "-c" else 0)

        result = self.orchestrator.convert("acme/resnet-50", self.output_dir, self.output_dir)

        self.assertTrue(result.success)
        for call in self.mock_run.call_args_list:
            self.assertNotIn("pip", call.args[0])


class TestConvertDescriptor(ConversionTestCase):
    def _descriptor(self):
        return ModelDescriptor(
            name="acme-resnet-50",
            display_name="acme/resnet-50",
            model_path=os.path.join(self.output_dir, "pytorch_model.bin"),
            model_format=ModelFormat.FOREIGN,
            extra_metadata={"huggingface_id": "acme/resnet-50"},
        )

    def test_success_points_descriptor_at_onnx(self):
        self._script(0, write=self._write)
        descriptor = self._descriptor()

        self.orchestrator.convert_descriptor(descriptor, self.output_dir, self.output_dir)

        self.assertEqual(descriptor.conversion_status, ConversionStatus.CONVERTED)
        self.assertEqual(descriptor.model_format, ModelFormat.NATIVE)
        self.assertEqual(descriptor.model_path, self.model_path)
        self.assertFalse(descriptor.needs_conversion)

    def test_placeholder_labels_keep_model_disabled(self):
        self._script(0, write=lambda: self._write(label_lines=("class_0000",)))
        descriptor = self._descriptor()
        descriptor.is_enabled = True

        self.orchestrator.convert_descriptor(descriptor, self.output_dir, self.output_dir)

        self.assertFalse(descriptor.is_enabled)
        self.assertTrue(descriptor.extra_metadata["synthetic_labels"])

    def test_undecodable_output_does_not_leave_converting(self):
        process = MagicMock()
        process.communicate.side_effect = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        self.mock_popen.return_value = process
        descriptor = self._descriptor()

        result = self.orchestrator.convert_descriptor(descriptor, self.output_dir, self.output_dir)

        self.assertFalse(result.success)
        self.assertEqual(descriptor.conversion_status, ConversionStatus.FAILED)

    def test_failure_recorded(self):
        self._script(1)
        descriptor = self._descriptor()

        result = self.orchestrator.convert_descriptor(descriptor, self.output_dir, self.output_dir)

        self.assertFalse(result.success)
        self.assertEqual(descriptor.conversion_status, ConversionStatus.FAILED)
        self.assertEqual(descriptor.model_format, ModelFormat.FOREIGN)
        self.assertIn("exited with code 1", descriptor.extra_metadata["conversion_error"])


class TestRunProcess(unittest.TestCase):
    def test_undecodable_output_is_replaced(self):
        orchestrator = ConversionOrchestrator(ConversionSettings(), runtime=_runtime())
        code = "import sys; sys.stdout.buffer.write(b'\\xff\\xfe progress'); sys.exit(1)"

        exit_code, stdout, _ = orchestrator._run_process([sys.executable, "-c", code])

        self.assertEqual(exit_code, 1)
        self.assertIn("progress", stdout)
        self.assertIn("\ufffd", stdout)


class TestSupport(unittest.TestCase):
    def test_is_conversion_supported(self):
        self.assertTrue(is_conversion_supported("microsoft/resnet-50"))
        self.assertFalse(is_conversion_supported("acme/mystery-net"))

    def test_script_name(self):
        self.assertEqual(script_name_for("google/vit-base"), "convert_google_vit-base.py")


if __name__ == '__main__':
    unittest.main()
