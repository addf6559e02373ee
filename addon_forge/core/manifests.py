"""Manifest bundle parsing.

Turns rendered text into generic structured objects (plain dicts) and
derives their identities. Nothing here knows about specific kinds.
"""

from __future__ import annotations

import re
from typing import Any

import yaml

from .errors import ParseError
from .models import GroupVersionKind, ResourceIdentity

_SEPARATOR = re.compile(r"^---[ \t]*$", re.MULTILINE)


def split_documents(text: str) -> list[str]:
    """Split a multi-document YAML string into its documents.

    Empty documents and documents holding only comments are dropped.
    Document order is preserved.

    Args:
        text: Raw text, possibly containing ``---`` separators

    Returns:
        List of document strings
    """
    documents = []
    for chunk in _SEPARATOR.split(text):
        meaningful = [
            line
            for line in chunk.splitlines()
            if line.strip() and not line.lstrip().startswith("#")
        ]
        if meaningful:
            documents.append(chunk.strip("\n"))
    return documents


def parse_document(text: str) -> dict[str, Any]:
    """Parse one document into a generic object.

    Args:
        text: A single YAML or JSON document

    Returns:
        The object as a dict

    Raises:
        ParseError: If the text is not a mapping with apiVersion, kind and
            metadata.name
    """
    try:
        obj = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError("Malformed document", details=str(e)) from e

    if not isinstance(obj, dict):
        raise ParseError("Document is not a mapping")
    for required in ("apiVersion", "kind"):
        if not isinstance(obj.get(required), str) or not obj[required]:
            raise ParseError(f"Document has no {required}")
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise ParseError(f"{obj['kind']} has no metadata.name")
    return obj


def expand_lists(obj: dict[str, Any]) -> list[dict[str, Any]]:
    """Expand ``kind: List`` wrappers into their items."""
    if obj.get("kind") == "List" and isinstance(obj.get("items"), list):
        return [item for item in obj["items"] if isinstance(item, dict)]
    return [obj]


def gvk_of(obj: dict[str, Any]) -> GroupVersionKind:
    """Get the GroupVersionKind of a generic object."""
    return GroupVersionKind.from_api_version(obj["apiVersion"], obj["kind"])


def identity_of(
    obj: dict[str, Any],
    *,
    namespaced: bool,
    default_namespace: str,
) -> ResourceIdentity:
    """Compute the identity of a generic object.

    Namespaced objects without a namespace inherit ``default_namespace``.
    Cluster-scoped objects always get an empty namespace.
    """
    gvk = gvk_of(obj)
    metadata = obj.get("metadata", {})
    namespace = ""
    if namespaced:
        namespace = metadata.get("namespace") or default_namespace
    return ResourceIdentity(
        group=gvk.group,
        version=gvk.version,
        kind=gvk.kind,
        namespace=namespace,
        name=metadata["name"],
    )


def labels_of(obj: dict[str, Any]) -> dict[str, str]:
    labels = obj.get("metadata", {}).get("labels")
    return dict(labels) if labels else {}
