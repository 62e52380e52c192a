"""
Unit tests for downloading catalog models and registering them.
"""

import sys
import os
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from tagforge.core.errors import NetworkError, NotFoundError, OperationCancelled
from tagforge.core.model_downloader import ModelDownloader, format_size
from tagforge.core.models import CatalogEntry, ModelFormat, RemoteFile, read_label_lines


class TestModelDownloader(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.client = MagicMock()
        self.client.file_url.side_effect = lambda model_id, filename: f"https://catalog.test/{model_id}/{filename}"
        self.contents = {"labels.txt": b"cat\ndog\n"}

        def download_file(url, destination, stop_event=None, progress_callback=None):
            data = self.contents.get(os.path.basename(destination), b"payload")
            with open(destination, "wb") as f:
                f.write(data)
            return len(data)

        self.client.download_file.side_effect = download_file
        self.downloader = ModelDownloader(self.client, self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_native_model_with_labels(self):
        self.client.get_model_files.return_value = [
            RemoteFile("README.md"), RemoteFile("model.onnx", size=2048), RemoteFile("labels.txt"),
        ]

        result = self.downloader.download("acme/resnet-50")

        expected_dir = os.path.join(self.tmp.name, "acme-resnet-50")
        self.assertEqual(result.target_dir, expected_dir)
        self.assertEqual(result.model_path, os.path.join(expected_dir, "model.onnx"))
        self.assertEqual(result.model_format, ModelFormat.NATIVE)
        self.assertFalse(result.synthetic_labels)
        fetched = [c.args[0] for c in self.client.download_file.call_args_list]
        self.assertEqual(fetched, ["https://catalog.test/acme/resnet-50/model.onnx",
                                   "https://catalog.test/acme/resnet-50/labels.txt"])

        detail = CatalogEntry(id="acme/resnet-50", downloads=1500, license="mit", description="ResNet")
        descriptor = self.downloader.create_descriptor_from_downloaded("acme/resnet-50", result.target_dir, detail, result)
        self.assertTrue(descriptor.is_enabled)
        self.assertEqual(descriptor.name, "acme-resnet-50")
        self.assertEqual(descriptor.license, "mit")
        self.assertEqual(descriptor.extra_metadata["downloads"], 1500)
        self.assertTrue(descriptor.is_usable())

    def test_foreign_model_without_labels(self):
        self.client.get_model_files.return_value = [
            RemoteFile("pytorch_model.bin"), RemoteFile("config.json"), RemoteFile("preprocessor_config.json"),
        ]

        result = self.downloader.download("acme/vit-tiny")

        self.assertEqual(result.model_format, ModelFormat.FOREIGN)
        self.assertTrue(result.synthetic_labels)
        labels = read_label_lines(result.labels_path)
        self.assertEqual(len(labels), 1000)
        self.assertEqual(labels[0], "class_0000")
        fetched = [os.path.basename(c.args[1]) for c in self.client.download_file.call_args_list]
        self.assertEqual(fetched, ["pytorch_model.bin", "config.json", "preprocessor_config.json"])

        descriptor = self.downloader.create_descriptor_from_downloaded("acme/vit-tiny", result.target_dir, result=result)
        self.assertFalse(descriptor.is_enabled)
        self.assertTrue(descriptor.needs_conversion)
        self.assertTrue(descriptor.extra_metadata["synthetic_labels"])

    def test_no_compatible_file(self):
        self.client.get_model_files.return_value = [RemoteFile("README.md")]
        with self.assertRaises(NotFoundError):
            self.downloader.download("acme/resnet-50")

    def test_cancelled(self):
        self.client.get_model_files.return_value = [RemoteFile("model.onnx")]
        stop_event = threading.Event()
        stop_event.set()
        with self.assertRaises(OperationCancelled):
            self.downloader.download("acme/resnet-50", stop_event=stop_event)
        self.client.download_file.assert_not_called()

    def test_download_many_skips_failures(self):
        def files(model_id):
            if model_id == "acme/broken":
                raise NetworkError("boom", status_code=500)
            return [RemoteFile("model.onnx"), RemoteFile("labels.txt")]

        self.client.get_model_files.side_effect = files
        progress = MagicMock()

        results = self.downloader.download_many(["acme/resnet-a", "acme/broken", "acme/resnet-b"], progress_callback=progress)

        self.assertEqual([r.model_id for r in results], ["acme/resnet-a", "acme/resnet-b"])

    def test_validate_downloaded_model(self):
        self.client.get_model_files.return_value = [RemoteFile("model.onnx"), RemoteFile("labels.txt")]
        result = self.downloader.download("acme/resnet-50")
        runtime = MagicMock()
        self.downloader.runtime = runtime

        self.assertTrue(self.downloader.validate_downloaded_model("acme/resnet-50", result.target_dir))
        runtime.open_session.assert_called_once_with(result.model_path)

        runtime.open_session.side_effect = RuntimeError("bad model")
        self.assertFalse(self.downloader.validate_downloaded_model("acme/resnet-50", result.target_dir))

        empty_dir = os.path.join(self.tmp.name, "empty")
        os.makedirs(empty_dir)
        self.assertFalse(self.downloader.validate_downloaded_model("acme/empty", empty_dir))

    def test_format_size(self):
        self.assertEqual(format_size(512), "512.0 B")
        self.assertEqual(format_size(1536), "1.5 KB")


if __name__ == '__main__':
    unittest.main()
