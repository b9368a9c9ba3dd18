"""Image definition module.

This module handles:
- Pydantic schema for image definitions
- YAML/JSON loading and validation
- Privilege and base image policy checks
"""

from proxy_imagegen.definitions.io import (
    load_definition,
    parse_definition_data,
    validate_definition_file,
)
from proxy_imagegen.definitions.schema import ImageDefinitionSchema

__all__ = [
    "ImageDefinitionSchema",
    "load_definition",
    "parse_definition_data",
    "validate_definition_file",
]
