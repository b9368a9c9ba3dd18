"""Pipeline module.

This module handles:
- Driving the build steps through the pipeline state machine
- Build fingerprints
- Build records and layer persistence
- Verification of produced images
"""

from proxy_imagegen.pipeline.models import BuildRecord, LayerRecord

__all__ = ["BuildRecord", "LayerRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via proxy_imagegen.pipeline.driver, etc.
