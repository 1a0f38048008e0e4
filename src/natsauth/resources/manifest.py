"""
Manifest loading.

Parses multi-document YAML manifests into resource models:

    kind: NatsAccount
    metadata:
      name: prod
    spec:
      authConfigRef: {name: root}
      limits: {conn: 100}
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

import yaml
from pydantic import ValidationError

from natsauth.exceptions import ResourceValidationError
from natsauth.resources.models import RESOURCE_TYPES, Resource


def parse_resource(document: dict) -> Resource:
    """Build a resource model from one parsed manifest document.

    Raises:
        ResourceValidationError: If the kind is unknown or the document does
            not match the schema.
    """
    if not isinstance(document, dict):
        raise ResourceValidationError("Manifest document must be a mapping")

    kind = document.get("kind")
    resource_type = RESOURCE_TYPES.get(kind)
    if resource_type is None:
        raise ResourceValidationError(f"Unsupported resource kind: {kind!r}")

    data = {key: value for key, value in document.items() if key not in ("kind", "apiVersion")}
    try:
        return resource_type.model_validate(data)
    except ValidationError as exc:
        raise ResourceValidationError(f"Invalid {kind}: {exc}") from exc


def load_manifests(source: Union[str, Path]) -> list[Resource]:
    """Load every resource from YAML text or a YAML file path."""
    if isinstance(source, Path):
        source = source.read_text()
    try:
        documents = list(yaml.safe_load_all(source))
    except yaml.YAMLError as exc:
        raise ResourceValidationError(f"Invalid YAML manifest: {exc}") from exc
    return [parse_resource(doc) for doc in documents if doc]
