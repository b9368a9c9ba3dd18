"""Proxy Image Generator - provisioning pipeline for proxy container images.

This package assembles a runnable container image around a pre-built proxy
binary: toolchain install, binary staging, runtime identity provisioning and
entrypoint binding, driven through a local container engine.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
