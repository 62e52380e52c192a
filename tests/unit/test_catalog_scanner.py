"""
Unit tests for the paginated catalog scan.

Verifies that:
1. A page served twice in a row ends the scan after the second fetch.
2. max_models returns exactly that many, the highest-priority ones.
3. The duplicate-ratio and page-ceiling guards stop runaway pagination.
4. A failed page returns the partial result; a failed entry is skipped.
5. Cancellation and empty pages end the scan cleanly.
"""

import sys
import os
import json
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from tagforge.core.catalog_client import CatalogPage
from tagforge.core.catalog_scanner import CatalogScanner, build_descriptor, descriptor_name, rank_descriptors
from tagforge.core.errors import NetworkError
from tagforge.core.models import CatalogEntry, FilterOptions, ModelFormat, RemoteFile
from tagforge.core.settings import CatalogSettings


def _record(model_id, downloads=5000, license="mit", **extra):
    data = {"id": model_id, "downloads": downloads, "likes": 0, "tags": [], "license": license}
    data.update(extra)
    return data


def _page(records):
    return CatalogPage(payload=json.dumps(records), entries=[CatalogEntry.from_api(r) for r in records])


def _client(pages, files=None):
    """Mock catalog client serving the given pages; details echo the listing."""
    details = {}
    for page in pages:
        if isinstance(page, CatalogPage):
            for entry in page.entries:
                details[entry.id] = entry

    client = MagicMock()
    client.fetch_page.side_effect = list(pages)
    client.get_model_info.side_effect = lambda model_id: details[model_id]
    client.get_model_files.return_value = files if files is not None else [RemoteFile("model.onnx"), RemoteFile("labels.txt")]
    return client


def _settings(**kwargs):
    kwargs.setdefault("page_delay_seconds", 0)
    return CatalogSettings(**kwargs)


class TestScanLoopGuards(unittest.TestCase):
    def test_identical_page_twice_terminates(self):
        page = _page([_record(f"acme/resnet-{i}") for i in range(3)])
        never = _page([_record("acme/resnet-never")])
        client = _client([page, page, never])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual(client.fetch_page.call_count, 2)
        self.assertEqual(sorted(d.display_name for d in results), [f"acme/resnet-{i}" for i in range(3)])

    def test_duplicate_ratio_stops_scan(self):
        first = _page([_record(f"acme/resnet-{i}") for i in range(10)])
        # 9 of 10 already seen, different payload
        second = _page([_record(f"acme/resnet-{i}") for i in range(1, 10)] + [_record("acme/resnet-new")])
        client = _client([first, second, _page([_record("acme/resnet-late")])])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual(client.fetch_page.call_count, 2)
        self.assertEqual(len(results), 10)
        self.assertNotIn("acme/resnet-new", [d.display_name for d in results])

    def test_duplicate_ratio_at_threshold_continues(self):
        first = _page([_record(f"acme/resnet-{i}") for i in range(10)])
        # 8 of 10 seen is not more than 0.8
        second = _page([_record(f"acme/resnet-{i}") for i in range(8)] + [_record("acme/resnet-x"), _record("acme/resnet-y")])
        client = _client([first, second, _page([])])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual(client.fetch_page.call_count, 3)
        self.assertEqual(len(results), 12)

    def test_page_ceiling(self):
        pages = [_page([_record(f"acme/resnet-p{p}")]) for p in range(10)]
        client = _client(pages)

        results = CatalogScanner(client, _settings(max_pages=3)).scan(FilterOptions(min_downloads=0))

        self.assertEqual(client.fetch_page.call_count, 3)
        self.assertEqual(len(results), 3)

    def test_empty_page_ends_scan(self):
        client = _client([_page([_record("acme/resnet-a")]), _page([])])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual(client.fetch_page.call_count, 2)
        self.assertEqual(len(results), 1)

    def test_query_offsets(self):
        client = _client([_page([_record("acme/resnet-a")]), _page([_record("acme/resnet-b")]), _page([])])

        CatalogScanner(client, _settings(page_size=25)).scan(FilterOptions(min_downloads=0, search_terms=("vit", "vit")))

        offsets = [c.args[0]["offset"] for c in client.fetch_page.call_args_list]
        self.assertEqual(offsets, [0, 25, 50])
        first_query = client.fetch_page.call_args_list[0].args[0]
        self.assertEqual(first_query["limit"], 25)
        self.assertEqual(first_query["search"], "vit")
        self.assertEqual(first_query["direction"], -1)


class TestScanSelection(unittest.TestCase):
    def test_max_models_returns_top_priority(self):
        records = [_record(f"acme/resnet-{i:02d}", downloads=i * 1000) for i in range(1, 51)]
        client = _client([_page(records), _page([])])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0, max_models=5))

        self.assertEqual(len(results), 5)
        self.assertEqual([d.display_name for d in results], [f"acme/resnet-{i:02d}" for i in (50, 49, 48, 47, 46)])

    def test_three_entry_license_scenario(self):
        records = [
            _record("acme/resnet-a", downloads=500, license="mit"),
            _record("acme/resnet-b", downloads=5000, license="mit"),
            _record("acme/resnet-c", downloads=5000, license="gpl"),
        ]
        client = _client([_page(records), _page([])])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=1000, licenses=frozenset({"mit"})))

        self.assertEqual([d.display_name for d in results], ["acme/resnet-b"])

    def test_detail_record_rechecked_against_filters(self):
        records = [
            _record("acme/resnet-a", license=""),
            _record("acme/resnet-b"),
            _record("acme/resnet-c"),
        ]
        client = _client([_page(records), _page([])])
        details = {
            "acme/resnet-a": CatalogEntry.from_api(_record("acme/resnet-a", license="gpl-3.0")),
            "acme/resnet-b": CatalogEntry.from_api(_record("acme/resnet-b", private=True)),
            "acme/resnet-c": CatalogEntry.from_api(_record("acme/resnet-c")),
        }
        client.get_model_info.side_effect = lambda model_id: details[model_id]

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0, licenses=frozenset({"mit"})))

        self.assertEqual([d.display_name for d in results], ["acme/resnet-c"])

    def test_candidates_start_disabled(self):
        client = _client([_page([_record("acme/resnet-a")]), _page([])], files=[RemoteFile("pytorch_model.bin")])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual(len(results), 1)
        self.assertFalse(results[0].is_enabled)
        self.assertEqual(results[0].model_format, ModelFormat.FOREIGN)
        self.assertEqual(results[0].name, "acme-resnet-a")
        self.assertEqual(results[0].extra_metadata["huggingface_id"], "acme/resnet-a")

    def test_incompatible_files_skipped(self):
        client = _client([_page([_record("acme/resnet-a")]), _page([])], files=[RemoteFile("README.md")])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual(results, [])


class TestScanFailures(unittest.TestCase):
    def test_page_failure_returns_partial_result(self):
        first = _page([_record("acme/resnet-a"), _record("acme/resnet-b")])
        client = _client([first, NetworkError("boom", status_code=500)])

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual(sorted(d.display_name for d in results), ["acme/resnet-a", "acme/resnet-b"])

    def test_entry_failure_is_skipped(self):
        first = _page([_record("acme/resnet-a"), _record("acme/resnet-b")])
        client = _client([first, _page([])])
        good = first.entries[1]

        def info(model_id):
            if model_id == "acme/resnet-a":
                raise NetworkError("detail failed", status_code=503)
            return good

        client.get_model_info.side_effect = info

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0))

        self.assertEqual([d.display_name for d in results], ["acme/resnet-b"])

    def test_cancel_before_start(self):
        client = _client([_page([_record("acme/resnet-a")])])
        stop_event = threading.Event()
        stop_event.set()

        results = CatalogScanner(client, _settings()).scan(FilterOptions(min_downloads=0), stop_event=stop_event)

        self.assertEqual(results, [])
        client.fetch_page.assert_not_called()

    def test_cancel_after_first_page(self):
        pages = [_page([_record(f"acme/resnet-p{p}")]) for p in range(5)]
        client = _client(pages)
        stop_event = threading.Event()

        results = CatalogScanner(client, _settings()).scan(
            FilterOptions(min_downloads=0),
            stop_event=stop_event,
            progress_callback=lambda page, found: stop_event.set(),
        )

        self.assertEqual(client.fetch_page.call_count, 1)
        self.assertEqual(len(results), 1)


class TestRanking(unittest.TestCase):
    def test_rank_by_priority_then_downloads(self):
        options = FilterOptions(min_downloads=0)
        files = [RemoteFile("model.onnx")]
        low = build_descriptor(CatalogEntry(id="a/resnet", downloads=50), files, options)
        high = build_descriptor(CatalogEntry(id="b/resnet", downloads=20000), files, options)
        tie = build_descriptor(CatalogEntry(id="c/resnet", downloads=30000), files, options)

        ranked = rank_descriptors([low, high, tie])

        self.assertEqual([d.display_name for d in ranked], ["c/resnet", "b/resnet", "a/resnet"])

    def test_descriptor_name(self):
        self.assertEqual(descriptor_name("microsoft/resnet-50"), "microsoft-resnet-50")


if __name__ == '__main__':
    unittest.main()
