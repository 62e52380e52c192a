"""
Application Configuration and Constants
=======================================

This module contains the global constants and defaults used throughout TagForge.
It is the single source of truth for:

- Catalog endpoints and query defaults
- Architecture allow-lists used to filter catalog noise
- Model and label file conventions
- Conversion runtime requirements
- Inference defaults and supported image formats

Dependencies:
- huggingface_hub.constants: For the standard Hub endpoint and cache location

Note:
    All constants use UPPER_SNAKE_CASE naming convention. Modify these values to
    change application-wide behavior without touching business logic.
"""

import os
from pathlib import Path

from huggingface_hub import constants

# ============================================================================
# APPLICATION SETTINGS
# ============================================================================

APP_NAME = "TagForge"
USER_AGENT = "TagForge/0.1"

# Working directories, relative to the current directory unless overridden
MODELS_DIR = Path(os.environ.get("TAGFORGE_MODELS_DIR", "models"))
REGISTRY_FILENAME = "model_registry.json"
CONVERSION_SCRIPTS_DIRNAME = "conversion_scripts"

# ============================================================================
# REMOTE CATALOG
# ============================================================================
# The catalog is the Hugging Face Hub model API. The endpoint honours the
# HF_ENDPOINT environment variable through huggingface_hub.

CATALOG_ENDPOINT = constants.ENDPOINT
CATALOG_SOURCE_NAME = "Hugging Face Hub"
CATALOG_PIPELINE_TAG = "image-classification"

# Used when the caller supplies no search terms
DEFAULT_SEARCH_TERMS = ("image-classification", "vision", "classification")

# Pagination and loop-guard defaults (see CatalogSettings)
CATALOG_PAGE_SIZE = 100
CATALOG_MAX_PAGES = 100
CATALOG_DUPLICATE_RATIO = 0.8
CATALOG_PAGE_DELAY_SECONDS = 0.1

# ============================================================================
# NETWORK AND RETRY CONFIGURATION
# ============================================================================

# Number of times to retry rate-limited or server-failed requests
MAX_RETRIES = 3

# Base delay between retry attempts (doubled after each attempt)
RETRY_DELAY_SECONDS = 1.0

# Maximum time to wait for network responses before timing out
NETWORK_TIMEOUT_SECONDS = 30

# Streaming chunk size for file downloads
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

# ============================================================================
# MODEL FILTERING
# ============================================================================

# A catalog entry must mention one of these in its id or tags
SUPPORTED_ARCHITECTURES = (
    "resnet", "efficientnet", "mobilenet", "inception",
    "vgg", "densenet", "alexnet", "squeezenet",
)

# Model name patterns that indicate quantized formats the runtime cannot load
INCOMPATIBLE_MODEL_PATTERNS = [
    "-gptq",      # GPTQ quantized models
    "-awq",       # AWQ quantized models
    "-gguf",      # GGUF format models
    "-ggml",      # GGML format models
    "-exl2",      # EXL2 quantized models
    "-bnb",       # BitsAndBytes quantized models
]

# Native format is ONNX; foreign formats need conversion first
NATIVE_MODEL_EXTENSIONS = ("onnx",)
FOREIGN_MODEL_EXTENSIONS = ("safetensors", "bin", "pt", "pth")

# Format aliases accepted in FilterOptions.supported_formats
FORMAT_ALIASES = {
    "pytorch": FOREIGN_MODEL_EXTENSIONS,
    "native": NATIVE_MODEL_EXTENSIONS,
}

DEFAULT_SUPPORTED_FORMATS = NATIVE_MODEL_EXTENSIONS + FOREIGN_MODEL_EXTENSIONS

# A file is label-like if its name contains one of these or ends in .txt
LABEL_FILE_HINTS = ("labels", "classes")

# File names that suggest a well-known label taxonomy (priority boost)
WELL_KNOWN_LABEL_HINTS = ("imagenet", "classes")

# Extra files needed to rebuild a foreign model locally before conversion
FOREIGN_SUPPORT_FILES = ("config.json", "preprocessor_config.json")

# Defaults for FilterOptions
DEFAULT_MIN_DOWNLOADS = 100
DEFAULT_MAX_MODEL_SIZE_MB = 500

# ============================================================================
# LABELS
# ============================================================================

# Synthetic placeholder labels written when a model ships without a label file
SYNTHETIC_LABEL_COUNT = 1000
SYNTHETIC_LABEL_FORMAT = "class_{:04d}"
SYNTHETIC_LABEL_PATTERN = r"^class_\d{4}$"

# Name used for scores that have no matching label
UNKNOWN_LABEL_FORMAT = "Unknown_{}"

# ============================================================================
# INFERENCE DEFAULTS
# ============================================================================

DEFAULT_IMAGE_WIDTH = 224
DEFAULT_IMAGE_HEIGHT = 224
DEFAULT_CONFIDENCE_THRESHOLD = 0.1
DEFAULT_MAX_TAGS = 5
DEFAULT_INFERENCE_WORKERS = 2

# ImageNet normalisation used by virtually all classification exports
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

# Files accepted by the tagging service
SUPPORTED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".gif", ".tiff", ".tif")

# ============================================================================
# CONVERSION
# ============================================================================

# Output names inside the conversion target directory
CONVERTED_MODEL_FILENAME = "model.onnx"
CONVERTED_LABELS_FILENAME = "labels.txt"

ONNX_OPSET_VERSION = 11

# Runtime executables probed in order after the configured one and sys.executable
RUNTIME_CANDIDATES = ("python3", "python")

RUNTIME_PROBE_TIMEOUT_SECONDS = 10
DEPENDENCY_CHECK_TIMEOUT_SECONDS = 60
DEPENDENCY_INSTALL_TIMEOUT_SECONDS = 900
CONVERSION_TIMEOUT_SECONDS = 1800

# Module imported by the conversion script -> package installed when missing
CONVERSION_DEPENDENCIES = {
    "torch": "torch",
    "transformers": "transformers",
    "onnx": "onnx",
}

# Architectures the conversion script is known to export
CONVERSION_SUPPORTED_PATTERNS = (
    "resnet", "mobilenet", "efficientnet", "vit", "swin", "convnext",
    "densenet", "inception", "alexnet", "vgg", "googlenet",
)

# ============================================================================
# REGISTRY TEMPLATES
# ============================================================================
# Well-known ONNX classification models from the ONNX model zoo. Used by
# ModelManager.create_from_template to register a model with sensible defaults.

MODEL_TEMPLATES = {
    "resnet50-v1-12": {
        "displayName": "ResNet-50 v1.12",
        "description": "ResNet-50 model for image classification",
        "source": "ONNX Models",
        "license": "MIT",
        "priority": 100,
    },
    "efficientnet-lite4-11": {
        "displayName": "EfficientNet-Lite4",
        "description": "Lightweight EfficientNet model for mobile/edge devices",
        "source": "ONNX Models",
        "license": "MIT",
        "priority": 90,
    },
    "mobilenetv2-12": {
        "displayName": "MobileNet v2",
        "description": "MobileNet v2 model optimized for mobile devices",
        "source": "ONNX Models",
        "license": "MIT",
        "priority": 80,
    },
    "inception-v1-12": {
        "displayName": "Inception v1",
        "description": "Inception v1 model for image classification",
        "source": "ONNX Models",
        "license": "MIT",
        "priority": 70,
    },
}
