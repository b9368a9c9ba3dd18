"""Image definition loading and export.

This module provides helpers for loading image definitions from YAML/JSON
files, validating them, and rewriting the pinned base image reference.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from proxy_imagegen.definitions.schema import (
    DefinitionValidationResult,
    ImageDefinitionSchema,
)
from proxy_imagegen.errors import DefinitionError

YAML_SUFFIXES = (".yaml", ".yml")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_data(path: Path) -> dict[str, Any]:
    """Load raw definition data, dispatching on file extension.

    Raises:
        ValueError: If the extension is not supported.
        DefinitionError: If a YAML file cannot be parsed.
    """
    suffix = path.suffix.lower()
    if suffix in YAML_SUFFIXES:
        try:
            return load_yaml(path)
        except yaml.YAMLError as e:
            raise DefinitionError(
                f"Invalid YAML in {path}: {e}", code="invalid_yaml"
            ) from e
    if suffix == ".json":
        return load_json(path)
    raise ValueError(
        f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
    )


def parse_definition_data(data: dict[str, Any]) -> ImageDefinitionSchema:
    """Parse and validate definition data, including policy checks.

    Args:
        data: Dictionary containing definition data.

    Returns:
        Validated ImageDefinitionSchema instance.

    Raises:
        pydantic.ValidationError: If data does not match schema.
        ValueError: If a privilege or base image policy is violated.
    """
    definition = ImageDefinitionSchema.model_validate(data)
    definition.validate_policies()
    return definition


def load_definition(path: Path) -> ImageDefinitionSchema:
    """Load and validate an image definition from a YAML or JSON file.

    Raises:
        ValueError: If the extension is unsupported or validation fails.
        DefinitionError: If the file cannot be parsed.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
    """
    return parse_definition_data(load_data(path))


def validate_definition_file(path: Path) -> DefinitionValidationResult:
    """Validate a definition file without raising.

    Args:
        path: Path to the definition file.

    Returns:
        DefinitionValidationResult listing any errors.
    """
    try:
        load_definition(path)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(loc) for loc in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        return DefinitionValidationResult(path=str(path), valid=False, errors=errors)
    except (OSError, ValueError, DefinitionError) as e:
        return DefinitionValidationResult(path=str(path), valid=False, errors=[str(e)])
    return DefinitionValidationResult(path=str(path), valid=True)


def definition_to_dict(definition: ImageDefinitionSchema) -> dict[str, Any]:
    """Convert a definition to a plain dict suitable for export."""
    return definition.model_dump(mode="json", exclude_none=True)


def export_definition_to_yaml(definition: ImageDefinitionSchema) -> str:
    """Export a definition to a YAML string."""
    return yaml.safe_dump(
        definition_to_dict(definition),
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )


def export_definition_to_json(definition: ImageDefinitionSchema) -> str:
    """Export a definition to a JSON string."""
    return json.dumps(definition_to_dict(definition), indent=2, ensure_ascii=False)


def update_base_image(path: Path, base_image: str) -> None:
    """Rewrite the base_image field of a definition file in place.

    The file keeps its format; other fields are written back unchanged.

    Args:
        path: Definition file.
        base_image: New (pinned) base image reference.
    """
    data = load_data(path)
    data["base_image"] = base_image
    if path.suffix.lower() in YAML_SUFFIXES:
        text = yaml.safe_dump(
            data, default_flow_style=False, sort_keys=False, allow_unicode=True
        )
    else:
        text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    path.write_text(text, encoding="utf-8")


__all__ = [
    "definition_to_dict",
    "export_definition_to_json",
    "export_definition_to_yaml",
    "load_data",
    "load_definition",
    "load_json",
    "load_yaml",
    "parse_definition_data",
    "update_base_image",
    "validate_definition_file",
]
