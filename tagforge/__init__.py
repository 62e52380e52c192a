"""
TagForge - Image Classification Model Lifecycle Engine
======================================================

Discovers image-classification models in a remote catalog, converts foreign
formats to ONNX, keeps a local registry of installed models and serves cached
inference sessions to the tagging layer.
"""

__version__ = "0.1.0"
