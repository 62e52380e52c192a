"""
Core Model Lifecycle Logic
==========================

This package contains the model lifecycle engine: catalog discovery and
ranking, format conversion, the persisted model registry and the inference
session cache used by the tagging service.
"""
