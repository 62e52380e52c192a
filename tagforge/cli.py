"""
TagForge command line interface.

Commands:
    scan         Scan the catalog for compatible image classifiers
    download     Download a catalog model and register it
    convert      Convert a registered foreign-format model to ONNX
    list         Show registered models
    enable       Enable a registered model
    disable      Disable a registered model
    set-default  Select the default model
    remove       Unregister a model
    tag          Tag an image
"""

import argparse
import logging
import os
import sys
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError

from tqdm import tqdm

from tagforge import __version__
from tagforge.core import config
from tagforge.core.catalog_client import CatalogClient
from tagforge.core.catalog_scanner import CatalogScanner
from tagforge.core.conversion import ConversionOrchestrator
from tagforge.core.errors import OperationCancelled, TagForgeError
from tagforge.core.inference_runtime import OnnxInferenceRuntime
from tagforge.core.model_downloader import ModelDownloader
from tagforge.core.model_registry import ModelManager
from tagforge.core.models import FilterOptions, ModelFormat
from tagforge.core.session_cache import InferenceSessionCache
from tagforge.core.tagging import TaggingService
from tagforge.utils.background_worker import BackgroundWorker
from tagforge.utils.config_manager import load_settings
from tagforge.utils.logger import setup_logging, shutdown_logging

logger = logging.getLogger(__name__)


def run_job(worker: BackgroundWorker, job, *args, **kwargs):
    """
    Run a stop_event-aware job on the worker and wait for it.

    Ctrl+C sets the job's stop_event; the job then winds down and its partial
    result (or OperationCancelled) is returned to the caller.
    """
    stop_event = threading.Event()
    future = worker.submit(job, *args, stop_event=stop_event, **kwargs)
    while True:
        try:
            return future.result(timeout=0.5)
        except FutureTimeoutError:
            continue
        except KeyboardInterrupt:
            print("Cancelling...", file=sys.stderr)
            stop_event.set()


def _runtime(settings):
    return OnnxInferenceRuntime(providers=settings.execution_providers)


def cmd_scan(args, settings, worker):
    options = FilterOptions(
        min_downloads=args.min_downloads,
        max_model_size_mb=args.max_size_mb,
        min_likes=args.min_likes,
        max_models=args.max_models,
        only_verified=args.verified,
        licenses=frozenset(args.license or ()),
        search_terms=tuple(args.search or ()),
        supported_formats=frozenset(args.format or config.DEFAULT_SUPPORTED_FORMATS),
        sort_by=args.sort_by,
    )
    with CatalogClient(settings.catalog) as client:
        scanner = CatalogScanner(client, settings.catalog)
        candidates = run_job(
            worker,
            scanner.scan,
            options,
            progress_callback=lambda page, found: print(f"  page {page}: {found} compatible models", file=sys.stderr),
        )

    for descriptor in candidates:
        print(f"{descriptor.display_name:<60} {descriptor.model_format.value:<14} "
              f"priority={descriptor.priority:<4} downloads={descriptor.downloads}")
    print(f"{len(candidates)} compatible models")

    if args.register:
        manager = ModelManager(settings.registry_path)
        for descriptor in candidates:
            if manager.get_model(descriptor.name) is None:
                manager.add_or_update(descriptor)
        print(f"Registered {len(candidates)} candidates (disabled until downloaded)")
    return 0


def _convert(manager, descriptor, settings, worker):
    orchestrator = ConversionOrchestrator(settings.conversion, runtime=_runtime(settings))
    source_dir = os.path.dirname(descriptor.model_path) or str(os.path.join(settings.models_dir, descriptor.name))
    result = run_job(worker, orchestrator.convert_descriptor, descriptor, source_dir, source_dir)
    if result.success and not result.synthetic_labels:
        descriptor.is_enabled = True
    manager.add_or_update(descriptor)
    if result.success:
        print(f"Converted {descriptor.name}: {result.model_path}")
        if result.synthetic_labels:
            print("Model has no class names; it stays disabled")
        return 0
    print(f"Conversion of {descriptor.name} failed: {result.message}", file=sys.stderr)
    return 1


def cmd_download(args, settings, worker):
    manager = ModelManager(settings.registry_path)
    with CatalogClient(settings.catalog) as client:
        downloader = ModelDownloader(client, settings.models_dir)
        with tqdm(unit="B", unit_scale=True, desc=args.model_id) as bar:
            def on_progress(done, total):
                bar.total = total
                bar.n = done
                bar.refresh()

            result = run_job(worker, downloader.download, args.model_id, progress_callback=on_progress)
        try:
            detail = client.get_model_info(args.model_id)
        except TagForgeError as e:
            logger.warning(f"Could not fetch details for {args.model_id}: {e}")
            detail = None

    descriptor = downloader.create_descriptor_from_downloaded(args.model_id, result.target_dir, detail, result)
    manager.add_or_update(descriptor)
    print(f"Downloaded {args.model_id} to {result.target_dir} ({descriptor.model_format.value})")

    if descriptor.model_format == ModelFormat.FOREIGN and args.convert:
        return _convert(manager, descriptor, settings, worker)
    if descriptor.model_format == ModelFormat.FOREIGN:
        print(f"Run 'tagforge convert {descriptor.name}' to make it usable")
    return 0


def cmd_convert(args, settings, worker):
    manager = ModelManager(settings.registry_path)
    descriptor = manager.get_model(args.name)
    if descriptor is None:
        print(f"Model not found: {args.name}", file=sys.stderr)
        return 1
    return _convert(manager, descriptor, settings, worker)


def cmd_list(args, settings, worker):
    manager = ModelManager(settings.registry_path)
    default = manager.get_default_model()
    for descriptor in manager.get_all_models():
        marker = "*" if default is not None and descriptor.name == default.name else " "
        state = "enabled" if descriptor.is_enabled else "disabled"
        print(f"{marker} {descriptor.name:<50} {state:<9} {descriptor.model_format.value:<14} "
              f"{descriptor.conversion_status.value:<13} priority={descriptor.priority}")
    return 0


def cmd_enable(args, settings, worker):
    ModelManager(settings.registry_path).set_enabled(args.name, args.command == "enable")
    return 0


def cmd_set_default(args, settings, worker):
    ModelManager(settings.registry_path).set_default(args.name)
    return 0


def cmd_remove(args, settings, worker):
    if not ModelManager(settings.registry_path).remove(args.name):
        print(f"Model not found: {args.name}", file=sys.stderr)
        return 1
    return 0


def cmd_tag(args, settings, worker):
    runtime = _runtime(settings)
    manager = ModelManager(settings.registry_path, runtime=runtime)
    with InferenceSessionCache(runtime, max_workers=settings.inference_workers) as cache:
        service = TaggingService(manager, cache)
        if not args.model:
            result = service.tag_image(args.image)
        elif len(args.model) == 1:
            result = service.tag_image_with_model(args.image, args.model[0])
        else:
            result = service.tag_image_with_models(args.image, args.model)

    for tag in result.tags:
        print(f"{tag.tag:<40} {tag.confidence:.4f}  ({tag.source})")
    if result.error_message:
        print(result.error_message, file=sys.stderr)
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tagforge", description="Image classification model lifecycle")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output on the console")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan the catalog for compatible models")
    scan.add_argument("--min-downloads", type=int, default=config.DEFAULT_MIN_DOWNLOADS)
    scan.add_argument("--max-size-mb", type=int, default=config.DEFAULT_MAX_MODEL_SIZE_MB)
    scan.add_argument("--min-likes", type=int, default=0)
    scan.add_argument("--max-models", type=int, default=0, help="0 means unlimited")
    scan.add_argument("--license", action="append", help="Allowed license (repeatable)")
    scan.add_argument("--search", action="append", help="Search term (repeatable)")
    scan.add_argument("--format", action="append", help="Supported file format (repeatable)")
    scan.add_argument("--sort-by", default="downloads", choices=("downloads", "likes", "lastModified"))
    scan.add_argument("--verified", action="store_true", help="Only verified authors")
    scan.add_argument("--register", action="store_true", help="Add the results to the registry")
    scan.set_defaults(handler=cmd_scan)

    download = sub.add_parser("download", help="Download and register a catalog model")
    download.add_argument("model_id")
    download.add_argument("--convert", action="store_true", help="Convert foreign formats after download")
    download.set_defaults(handler=cmd_download)

    convert = sub.add_parser("convert", help="Convert a registered model to ONNX")
    convert.add_argument("name")
    convert.set_defaults(handler=cmd_convert)

    listing = sub.add_parser("list", help="List registered models")
    listing.set_defaults(handler=cmd_list)

    for name, handler in (("enable", cmd_enable), ("disable", cmd_enable),
                          ("set-default", cmd_set_default), ("remove", cmd_remove)):
        command = sub.add_parser(name, help=f"{name.replace('-', ' ').capitalize()} a registered model")
        command.add_argument("name")
        command.set_defaults(handler=handler)

    tag = sub.add_parser("tag", help="Tag an image")
    tag.add_argument("image")
    tag.add_argument("-m", "--model", action="append", help="Model name (repeatable, default model if omitted)")
    tag.set_defaults(handler=cmd_tag)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(console_level=logging.DEBUG if args.verbose else logging.WARNING)
    settings = load_settings()
    worker = BackgroundWorker(name="LifecycleWorker")

    try:
        return args.handler(args, settings, worker)
    except OperationCancelled as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return 130
    except TagForgeError as e:
        logger.error(f"{args.command} failed: {type(e).__name__}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        worker.shutdown()
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
