"""Hashing and change detection.

A fingerprint covers every input that influences a feature's or a
release's rendered output. Inputs are canonicalized before digesting, so
reordered keys and whitespace-only differences do not cause a redeploy.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import yaml
from loguru import logger
from pydantic import BaseModel

from .manifests import split_documents

if TYPE_CHECKING:
    from .models import ContentSource, OwnerReference, ReleaseSpec


class _Malformed(Exception):
    pass


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _canonicalize_text(text: str) -> str:
    try:
        documents = [yaml.safe_load(doc) for doc in split_documents(text)]
    except yaml.YAMLError as e:
        raise _Malformed(str(e)) from e
    return _canonical_json(documents)


def canonicalize(value: Any) -> str:
    """Render a hash input in a stable, content-level form.

    Raises:
        _Malformed: If a textual input cannot be parsed
    """
    if value is None:
        return ""
    if isinstance(value, bytes):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    if isinstance(value, str):
        return _canonicalize_text(value)
    if isinstance(value, BaseModel):
        return _canonical_json(value.model_dump(mode="json"))
    if isinstance(value, (Mapping, list, tuple)):
        return _canonical_json(value)
    return str(value)


def compute_hash(*inputs: Any) -> str:
    """Compute a deterministic sha256 digest over inputs.

    Inputs are digested in the order given. Each one is length-prefixed so
    that two different splits of the same bytes never collide.

    Malformed input does not raise. Unknown content is treated as changed:
    a random salt is mixed in, so the digest never matches a previous one.

    Args:
        *inputs: Values in a caller-defined, stable order

    Returns:
        Hex digest
    """
    digest = hashlib.sha256()
    for value in inputs:
        try:
            encoded = canonicalize(value).encode("utf-8")
        except _Malformed as e:
            logger.debug(f"Hash input could not be canonicalized, forcing redeploy: {e}")
            encoded = f"malformed:{uuid4().hex}".encode()
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return digest.hexdigest()


def should_redeploy(
    previous_hash: str | None, current_hash: str, force: bool = False
) -> bool:
    """Return True iff the digests differ or a redeploy is forced."""
    return force or previous_hash != current_hash


def resources_hash(
    sources: Iterable[ContentSource],
    context_objects: Mapping[str, Mapping[str, Any]] | None = None,
    *,
    target_namespace: str = "",
    script_prelude: Iterable[str] = (),
    owner_reference: OwnerReference | None = None,
) -> str:
    """Fingerprint everything that shapes a feature's applied objects.

    Sources are ordered by kind, namespace and name; their data by key.
    Referenced context objects contribute their resourceVersion (or their
    full content when they have none), ordered by identifier. The target
    namespace, script prelude and owner reference come first.
    """
    inputs: list[Any] = [
        (target_namespace,),
        (*script_prelude,),
        owner_reference.as_dict() if owner_reference else (),
    ]
    ordered = sorted(sources, key=lambda s: (s.kind, s.namespace, s.name))
    for source in ordered:
        # Tuples are digested verbatim; plain strings are parsed as manifests
        inputs.append((source.kind, source.namespace, source.name))
        inputs.append((source.template, source.script))
        for key in sorted(source.data):
            content = source.decoded(key)
            inputs.append((key,))
            # Templates and scripts are not valid manifests before rendering
            inputs.append((content,) if source.template or source.script else content)

    objects = context_objects or {}
    for identifier in sorted(objects):
        obj = objects[identifier]
        version = obj.get("metadata", {}).get("resourceVersion")
        inputs.append((identifier, version or ""))
        if not version:
            inputs.append(dict(obj))

    return compute_hash(*inputs)


def helm_hash(spec: ReleaseSpec) -> str:
    """Fingerprint a release's chart version and values."""
    return compute_hash((spec.chart_version,), spec.values)
