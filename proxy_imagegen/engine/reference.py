"""Base image reference parsing and digest pinning.

Builds start from a content-addressed base reference so that two runs
from the same definition start from the same filesystem. Moving to a
newer base is an explicit step: resolve_digest() pulls the reference and
returns it pinned to the digest the registry served.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from proxy_imagegen.engine.runner import ContainerEngine

logger = logging.getLogger(__name__)

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")

FLOATING_TAG = "latest"


class ImageReferenceError(ValueError):
    """Raised when an image reference cannot be parsed or resolved."""

    def __init__(self, message: str, code: str = "invalid_reference") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ImageReference:
    """Parsed image reference.

    Attributes:
        repository: Registry and repository path.
        tag: Tag, if present.
        digest: Content digest (``sha256:<hex>``), if present.
    """

    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def is_pinned(self) -> bool:
        """Check if the reference is content-addressed."""
        return self.digest is not None

    @property
    def is_floating(self) -> bool:
        """Check if the reference tracks a rolling tag without a digest."""
        return self.digest is None and (self.tag is None or self.tag == FLOATING_TAG)

    def with_digest(self, digest: str) -> ImageReference:
        """Return a copy pinned to the given digest."""
        if not DIGEST_PATTERN.match(digest):
            raise ImageReferenceError(f"Invalid digest: {digest}", code="invalid_digest")
        return ImageReference(self.repository, self.tag, digest)

    def __str__(self) -> str:
        text = self.repository
        if self.tag:
            text += f":{self.tag}"
        if self.digest:
            text += f"@{self.digest}"
        return text


def parse_reference(reference: str) -> ImageReference:
    """Parse an image reference into repository, tag and digest.

    Args:
        reference: Reference like ``repo:tag``, ``repo@sha256:...`` or both.

    Returns:
        ImageReference instance.

    Raises:
        ImageReferenceError: If the reference is empty or has a malformed digest.
    """
    reference = reference.strip()
    if not reference:
        raise ImageReferenceError("Image reference must not be empty")

    name, sep, digest = reference.partition("@")
    if sep and not DIGEST_PATTERN.match(digest):
        raise ImageReferenceError(
            f"Malformed digest in reference '{reference}'", code="invalid_digest"
        )

    # A colon after the last slash separates the tag; earlier colons are ports
    tag: str | None = None
    last_slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > last_slash:
        name, tag = name[:colon], name[colon + 1 :]
        if not tag:
            raise ImageReferenceError(f"Empty tag in reference '{reference}'")

    if not name:
        raise ImageReferenceError(f"Missing repository in reference '{reference}'")

    return ImageReference(repository=name, tag=tag, digest=digest or None)


def is_pinned(reference: str) -> bool:
    """Check if a reference string carries a content digest."""
    return parse_reference(reference).is_pinned


def resolve_digest(engine: ContainerEngine, reference: str) -> str:
    """Pull a reference and return it pinned to the served digest.

    Args:
        engine: Container engine used to pull and inspect.
        reference: Reference to resolve (a pinned one is re-resolved by tag).

    Returns:
        Pinned reference string ``repository[:tag]@sha256:...``.

    Raises:
        ImageReferenceError: If the engine reports no repository digest.
        EngineCommandError: If pulling or inspecting fails.
    """
    parsed = parse_reference(reference)
    floating = ImageReference(parsed.repository, parsed.tag or FLOATING_TAG)

    logger.info("Resolving digest for %s", floating)
    engine.pull(str(floating))
    info = engine.inspect_image(str(floating))

    repo_digests: list[str] = info.get("RepoDigests") or []
    for entry in repo_digests:
        repo, _, digest = entry.partition("@")
        # Registries may report a normalized name for single-digest images
        matches = repo == parsed.repository or len(repo_digests) == 1
        if matches and DIGEST_PATTERN.match(digest):
            pinned = floating.with_digest(digest)
            logger.info("Resolved %s to %s", floating, pinned)
            return str(pinned)

    raise ImageReferenceError(
        f"No repository digest reported for {floating}", code="digest_not_found"
    )


__all__ = [
    "DIGEST_PATTERN",
    "FLOATING_TAG",
    "ImageReference",
    "ImageReferenceError",
    "is_pinned",
    "parse_reference",
    "resolve_digest",
]
