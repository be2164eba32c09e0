"""Image reference validation and normalisation.

References follow the familiar ``[registry/]repository[:tag][@digest]`` form:

    >>> resolve("devrahul16/fe:42").canonical
    'docker.io/devrahul16/fe:42'
    >>> resolve("nginx").repository
    'library/nginx'

A digest pins the image and is passed through unchanged. A tag (explicit or
the implicit ``latest``) can be re-pointed at any time, so the returned
``ImageRef`` is flagged ``mutable``.
"""

from __future__ import annotations

import logging
import re

from .contracts import ImageRef
from .errors import ImageReferenceError

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

_HOST_LABEL = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?$")
_PORT = re.compile(r"^[0-9]{1,5}$")
_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:\.|_|__|-+)[a-z0-9]+)*$")
_TAG_CHARS = re.compile(r"^[A-Za-z0-9_.-]+$")
_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_LENGTHS = {"sha256": 64, "sha384": 96, "sha512": 128}
_HEX = re.compile(r"^[a-f0-9]+$")


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def _validate_registry(reference: str, registry: str) -> None:
    host, _, port = registry.partition(":")
    if ":" in registry and not _PORT.match(port):
        raise ImageReferenceError(reference, f"malformed registry port in {registry!r}")
    labels = host.split(".")
    if not host or not all(_HOST_LABEL.match(label) for label in labels):
        raise ImageReferenceError(reference, f"malformed registry host {registry!r}")


def _validate_digest(reference: str, digest: str) -> None:
    algorithm, sep, value = digest.partition(":")
    expected = _DIGEST_LENGTHS.get(algorithm)
    if not sep or expected is None:
        raise ImageReferenceError(reference, f"unsupported digest {digest!r}")
    if len(value) != expected or not _HEX.match(value):
        raise ImageReferenceError(
            reference, f"digest must be {expected} lowercase hex characters"
        )


def _validate_tag(reference: str, tag: str) -> None:
    if not _TAG_CHARS.match(tag):
        raise ImageReferenceError(
            reference, f"tag {tag!r} contains characters outside [A-Za-z0-9_.-]"
        )
    if not _TAG.match(tag):
        raise ImageReferenceError(
            reference, f"tag {tag!r} must start with [A-Za-z0-9_] and be at most 128 characters"
        )


def resolve(reference: str) -> ImageRef:
    """Parse ``reference`` into an :class:`ImageRef`.

    Raises:
        ImageReferenceError: the reference is empty, contains whitespace, has
            a malformed registry host, an empty or invalid repository, an
            invalid tag or an unsupported digest.
    """

    if reference is None or not reference.strip():
        raise ImageReferenceError(reference or "", "reference is empty")
    if any(ch.isspace() for ch in reference):
        raise ImageReferenceError(reference, "reference contains whitespace")

    name, digest = reference, None
    if "@" in reference:
        name, digest = reference.split("@", 1)
        _validate_digest(reference, digest)

    tag = None
    slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > slash:
        name, tag = name[:colon], name[colon + 1 :]
        _validate_tag(reference, tag)

    components = name.split("/")
    registry = DEFAULT_REGISTRY
    if len(components) > 1 and _looks_like_registry(components[0]):
        registry = components[0]
        components = components[1:]
        _validate_registry(reference, registry)

    if not any(components):
        raise ImageReferenceError(reference, "repository is empty")
    for component in components:
        if not _PATH_COMPONENT.match(component):
            raise ImageReferenceError(
                reference, f"invalid repository component {component!r}"
            )

    if registry == DEFAULT_REGISTRY and len(components) == 1:
        components = ["library", *components]

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    image = ImageRef(
        registry=registry,
        repository="/".join(components),
        tag=tag,
        digest=digest,
        mutable=digest is None,
        reference=reference,
    )
    logger.debug(f"Resolved image {reference} -> {image.canonical}")
    return image
