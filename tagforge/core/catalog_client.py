"""
Remote Catalog HTTP Client
==========================

Thin client over the Hugging Face Hub model API used by the catalog scanner
and the model downloader. All calls are plain HTTP GETs through a shared
``requests.Session``.

Endpoints:
- ``/api/models``: paged listing (limit/offset/sort/direction/search)
- ``/api/models/{id}``: model detail
- ``/api/models/{id}/tree/main``: file tree as ``{path, type, size}`` records
- ``/{id}/resolve/main/{file}``: raw file download (streamed to disk)

Error mapping:
- 404 -> NotFoundError
- any other non-2xx, connection failure or malformed JSON -> NetworkError
- 429 and 5xx are retried with exponential backoff, honouring Retry-After
"""

import json
import logging
import os
import threading
import time
from functools import wraps
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import requests
from huggingface_hub import hf_hub_url
from tqdm import tqdm

from tagforge.core import config
from tagforge.core.errors import NetworkError, NotFoundError, OperationCancelled
from tagforge.core.models import CatalogEntry, RemoteFile
from tagforge.core.settings import CatalogSettings
from tagforge.utils.logger import log_api_request, log_api_response

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class CatalogPage(NamedTuple):
    """Raw payload of one listing page plus its parsed entries."""
    payload: str
    entries: List[CatalogEntry]


def rate_limit_handler(func):
    """
    Retry a client method on HTTP 429 and 5xx responses.

    Retries up to ``settings.max_retries`` times. The wait starts at
    ``settings.retry_delay`` and doubles per attempt unless the server sends
    a Retry-After header. Other errors are raised immediately.
    """
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        retries = 0
        delay = self.settings.retry_delay

        while True:
            try:
                return func(self, *args, **kwargs)
            except NetworkError as e:
                retryable = e.status_code == 429 or (e.status_code is not None and e.status_code >= 500)
                if not retryable:
                    raise
                if retries >= self.settings.max_retries:
                    logger.error(f"Max retries exceeded for {e.url}: {e}")
                    raise

                wait_time = delay
                retry_after = getattr(e, "retry_after", None)
                if retry_after is not None:
                    wait_time = retry_after + 1.0

                kind = "Rate limited" if e.status_code == 429 else f"Server error {e.status_code}"
                logger.warning(f"⚠️ {kind} by catalog. Waiting {wait_time:.1f}s before retry {retries + 1}/{self.settings.max_retries}...")
                time.sleep(wait_time)
                retries += 1
                delay *= 2
    return wrapper


class TqdmToCallback(tqdm):
    """tqdm subclass that forwards throttled byte progress to a callback instead of the terminal."""

    def __init__(self, *args, **kwargs):
        self._callback = kwargs.pop("callback", None)
        self._last_reported = 0
        self.fp = open(os.devnull, "w")
        kwargs["file"] = self.fp
        super().__init__(*args, **kwargs)

    def update(self, n=1):
        super().update(n)
        if not self._callback:
            return
        total = self.total or 0
        # Report every 1% (at least 1MB) and on completion to avoid flooding the caller
        threshold = max(int(total * 0.01), 1024 * 1024)
        is_complete = total > 0 and self.n >= total
        if self.n - self._last_reported >= threshold or is_complete:
            self._callback(self.n, total)
            self._last_reported = self.n

    def close(self):
        super().close()
        if self.fp and not self.fp.closed:
            self.fp.close()


class CatalogClient:
    """
    HTTP collaborator for the remote model catalog.

    Supports context manager protocol for automatic cleanup:
        with CatalogClient(settings) as client:
            page = client.fetch_page({"limit": 100, "offset": 0})
    """

    def __init__(self, settings: Optional[CatalogSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or CatalogSettings()
        self.settings.validate()
        self.base_url = self.settings.endpoint.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": config.USER_AGENT})
        if self.settings.token:
            self.session.headers.update({"Authorization": f"Bearer {self.settings.token}"})

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.session.close()

    # ------------------------------------------------------------------
    # Low-level request helpers
    # ------------------------------------------------------------------

    def _request(self, url: str, params: Optional[Dict[str, Any]] = None, stream: bool = False) -> requests.Response:
        log_api_request(logger, "GET", url, headers=dict(self.session.headers), params=params)
        start_time = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.settings.timeout, stream=stream)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {type(e).__name__}: {e}", url=url) from e

        elapsed = time.time() - start_time
        log_api_response(logger, response.status_code, None if stream else response.text, elapsed)

        if response.status_code == 404:
            response.close()
            raise NotFoundError(f"Catalog resource not found: {url}")
        if not 200 <= response.status_code < 300:
            reason = "" if stream else response.text[:200]
            error = NetworkError(
                f"Catalog request {url} returned HTTP {response.status_code}: {reason}",
                status_code=response.status_code,
                url=url,
            )
            retry_after = response.headers.get("retry-after")
            if retry_after:
                try:
                    error.retry_after = float(retry_after)
                except ValueError:
                    logger.debug(f"Ignoring non-numeric Retry-After header: {retry_after!r}")
            response.close()
            raise error
        return response

    @rate_limit_handler
    def _get_text(self, url: str, params: Optional[Dict[str, Any]] = None) -> str:
        response = self._request(url, params=params)
        return response.text

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None):
        text = self._get_text(url, params=params)
        try:
            return text, json.loads(text)
        except json.JSONDecodeError as e:
            raise NetworkError(f"Malformed JSON from {url}: {e}", url=url) from e

    # ------------------------------------------------------------------
    # Catalog API
    # ------------------------------------------------------------------

    def fetch_page(self, params: Dict[str, Any]) -> CatalogPage:
        """Fetch one listing page. The raw payload is kept for identical-page detection."""
        url = f"{self.base_url}/api/models"
        payload, data = self._get_json(url, params=params)
        if not isinstance(data, list):
            raise NetworkError(f"Expected a JSON list from {url}, got {type(data).__name__}", url=url)
        entries = [CatalogEntry.from_api(item) for item in data if isinstance(item, dict)]
        return CatalogPage(payload=payload, entries=entries)

    def get_model_info(self, model_id: str) -> CatalogEntry:
        """Fetch the detail record for one model."""
        url = f"{self.base_url}/api/models/{model_id}"
        _, data = self._get_json(url)
        if not isinstance(data, dict):
            raise NetworkError(f"Expected a JSON object for model {model_id}", url=url)
        return CatalogEntry.from_api(data)

    def get_model_files(self, model_id: str) -> List[RemoteFile]:
        """Fetch the top-level file tree of a model's main revision."""
        url = f"{self.base_url}/api/models/{model_id}/tree/main"
        _, data = self._get_json(url)
        if not isinstance(data, list):
            raise NetworkError(f"Expected a JSON list for files of {model_id}", url=url)
        files = []
        for item in data:
            if not isinstance(item, dict) or not item.get("path"):
                continue
            size = item.get("size")
            files.append(RemoteFile(path=item["path"], type=item.get("type", "file"), size=int(size) if size is not None else None))
        logger.debug(f"Found {len(files)} files for model {model_id}")
        return files

    def file_url(self, model_id: str, filename: str) -> str:
        return hf_hub_url(repo_id=model_id, filename=filename, endpoint=self.base_url)

    @rate_limit_handler
    def download_file(
        self,
        url: str,
        destination: str,
        stop_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> int:
        """
        Stream a file to disk.

        Bytes go to ``destination + '.part'`` first and are renamed into place
        only after the transfer completes, so an interrupted download never
        leaves a truncated file under the final name.

        Returns:
            Number of bytes written.

        Raises:
            OperationCancelled: If stop_event is set mid-transfer
        """
        logger.info(f"📥 Downloading {url} -> {destination}")
        part_path = destination + ".part"
        response = self._request(url, stream=True)
        written = 0
        try:
            total = int(response.headers.get("content-length") or 0)
            with open(part_path, "wb") as f, TqdmToCallback(
                total=total or None, unit="B", unit_scale=True,
                desc=os.path.basename(destination), callback=progress_callback
            ) as bar:
                for chunk in response.iter_content(chunk_size=config.DOWNLOAD_CHUNK_SIZE):
                    if stop_event is not None and stop_event.is_set():
                        raise OperationCancelled(f"Download of {url} cancelled")
                    if not chunk:
                        continue
                    f.write(chunk)
                    written += len(chunk)
                    bar.update(len(chunk))
        except requests.exceptions.RequestException as e:
            self._remove_partial(part_path)
            raise NetworkError(f"Download of {url} failed: {e}", url=url) from e
        except BaseException:
            self._remove_partial(part_path)
            raise
        finally:
            response.close()

        os.replace(part_path, destination)
        logger.info(f"✅ Downloaded {os.path.basename(destination)} ({written:,} bytes)")
        return written

    @staticmethod
    def _remove_partial(path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial download {path}: {e}")
