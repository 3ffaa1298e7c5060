"""Loading of Service manifests from YAML files for offline commands.

SECURITY: Files are size-checked before reading and parsed with safe_load.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import ServiceResource

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when a manifest file cannot be loaded or validated."""

    pass


def load_manifests(path: Path) -> list[ServiceResource]:
    """Load every Service from a YAML file.

    Accepts multi-document files and ``kind: List`` wrappers. Documents of
    other kinds are skipped.

    Raises:
        ManifestLoadError: If the file cannot be read, parsed or validated.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    resources: list[ServiceResource] = []
    for document in _flatten(documents, path):
        if document.get("kind", "Service") != "Service":
            logger.debug("Skipping non-Service document", extra={"kind": document.get("kind"), "path": str(path)})
            continue
        try:
            resources.append(ServiceResource.from_manifest(document))
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"  - {loc}: {error['msg']}")
            name = (document.get("metadata") or {}).get("name", "<unnamed>")
            raise ManifestLoadError(f"Invalid Service {name} in {path}:\n" + "\n".join(errors)) from e

    logger.info("Loaded %d service(s) from %s", len(resources), path)
    return resources


def _flatten(documents: list[Any], path: Path) -> list[dict[str, Any]]:
    flat: list[dict[str, Any]] = []
    for document in documents:
        if not isinstance(document, dict):
            raise ManifestLoadError(f"Manifest documents must be YAML mappings: {path}")
        if document.get("kind") == "List":
            flat.extend(_flatten(document.get("items") or [], path))
        else:
            flat.append(document)
    return flat
