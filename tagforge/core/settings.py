"""
Settings Dataclasses
====================

Mutable configuration objects for the lifecycle engine. They are persisted
between runs by ``tagforge.utils.config_manager`` and handed to the catalog
client, scanner and conversion orchestrator at construction time.
"""

from dataclasses import dataclass, field
from typing import Optional

from tagforge.core import config


@dataclass
class CatalogSettings:
    """
    Configuration for the remote catalog client and scanner.

    Attributes:
        endpoint: Base URL of the catalog (Hub endpoint by default)
        token: Optional access token sent as a Bearer header
        timeout: Per-request timeout in seconds
        max_retries: Retries for rate-limited (429) and 5xx responses
        retry_delay: Initial backoff in seconds, doubled per retry
        page_size: Entries requested per page
        max_pages: Hard ceiling on pages scanned
        duplicate_ratio: Stop when more than this fraction of a page was already seen
        page_delay_seconds: Pause between pages
    """
    endpoint: str = config.CATALOG_ENDPOINT
    token: str = ""
    timeout: float = config.NETWORK_TIMEOUT_SECONDS
    max_retries: int = config.MAX_RETRIES
    retry_delay: float = config.RETRY_DELAY_SECONDS
    page_size: int = config.CATALOG_PAGE_SIZE
    max_pages: int = config.CATALOG_MAX_PAGES
    duplicate_ratio: float = config.CATALOG_DUPLICATE_RATIO
    page_delay_seconds: float = config.CATALOG_PAGE_DELAY_SECONDS

    def validate(self):
        if not self.endpoint:
            raise ValueError("Catalog endpoint must not be empty")
        if self.page_size < 1:
            raise ValueError(f"page_size must be positive, got {self.page_size}")
        if self.max_pages < 1:
            raise ValueError(f"max_pages must be positive, got {self.max_pages}")
        if not 0.0 < self.duplicate_ratio <= 1.0:
            raise ValueError(f"duplicate_ratio must be within (0, 1], got {self.duplicate_ratio}")
        if self.page_delay_seconds < 0:
            raise ValueError(f"page_delay_seconds must not be negative, got {self.page_delay_seconds}")


@dataclass
class ConversionSettings:
    """
    Configuration for the conversion orchestrator.

    Attributes:
        runtime_executable: Interpreter to try first (empty = probe only)
        scripts_dir: Where conversion scripts are written
        install_missing: Attempt ``pip install`` for missing dependencies
        probe_timeout: Timeout for ``--version`` probes
        conversion_timeout: Timeout for the conversion script itself
    """
    runtime_executable: str = ""
    scripts_dir: str = str(config.MODELS_DIR / config.CONVERSION_SCRIPTS_DIRNAME)
    install_missing: bool = True
    probe_timeout: float = config.RUNTIME_PROBE_TIMEOUT_SECONDS
    conversion_timeout: float = config.CONVERSION_TIMEOUT_SECONDS


@dataclass
class AppSettings:
    """Top-level settings persisted to the user's config file."""
    models_dir: str = str(config.MODELS_DIR)
    registry_path: str = str(config.MODELS_DIR / config.REGISTRY_FILENAME)
    inference_workers: int = config.DEFAULT_INFERENCE_WORKERS
    execution_providers: Optional[list] = None
    catalog: CatalogSettings = field(default_factory=CatalogSettings)
    conversion: ConversionSettings = field(default_factory=ConversionSettings)
