"""Container engine module.

This module handles:
- Driving the container engine CLI to create, commit and tag layers
- Parsing and pinning base image references
"""

from proxy_imagegen.engine.runner import ContainerEngine, ExecResult

__all__ = ["ContainerEngine", "ExecResult"]
