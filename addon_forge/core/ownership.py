"""Ownership labels and owner references.

The label triple is a lookup key, never a lifecycle link: it is the only
thing conflict and staleness detection look at. Owner references are set
for the cluster's own cascading cleanup.
"""

from __future__ import annotations

from typing import Any

from .errors import ConflictError
from .manifests import labels_of
from .models import OwnerReference, OwnershipLabels


def owner_of(obj: dict[str, Any]) -> OwnershipLabels | None:
    """Read the ownership triple from an object, if it carries all three labels."""
    return OwnershipLabels.from_labels(labels_of(obj))


def is_owned_by(obj: dict[str, Any], owner: OwnershipLabels) -> bool:
    """Check whether an object's ownership labels match ``owner``."""
    return owner_of(obj) == owner


def add_labels(obj: dict[str, Any], labels: dict[str, str]) -> None:
    """Merge labels into an object's metadata, keeping existing ones."""
    metadata = obj.setdefault("metadata", {})
    current = metadata.get("labels") or {}
    current.update(labels)
    metadata["labels"] = current


def stamp_ownership(obj: dict[str, Any], owner: OwnershipLabels) -> None:
    add_labels(obj, owner.as_labels())


def add_owner_reference(obj: dict[str, Any], ref: OwnerReference) -> None:
    """Add an owner reference unless one with the same uid is present."""
    metadata = obj.setdefault("metadata", {})
    refs: list[dict[str, Any]] = list(metadata.get("ownerReferences") or [])
    if any(r.get("uid") == ref.uid for r in refs):
        return
    refs.append(ref.as_dict())
    metadata["ownerReferences"] = refs


def merge_owner_references(
    obj: dict[str, Any], existing: dict[str, Any], last_applied: dict[str, Any]
) -> None:
    """Carry over owner references that someone else added to ``existing``.

    References this engine applied before but no longer wants are dropped.
    The live order is kept; new references go last.
    """
    metadata = obj.setdefault("metadata", {})
    wanted = {r.get("uid"): r for r in metadata.get("ownerReferences") or []}
    applied = {
        r.get("uid")
        for r in last_applied.get("metadata", {}).get("ownerReferences") or []
    }

    merged: list[dict[str, Any]] = []
    for ref in existing.get("metadata", {}).get("ownerReferences") or []:
        uid = ref.get("uid")
        if uid in wanted:
            merged.append(wanted.pop(uid))
        elif uid not in applied:
            merged.append(ref)
    merged.extend(wanted.values())

    if merged:
        metadata["ownerReferences"] = merged
    else:
        metadata.pop("ownerReferences", None)


def ensure_owned(obj: dict[str, Any], owner: OwnershipLabels, what: object) -> None:
    """Check that an existing object belongs to ``owner``.

    Raises:
        ConflictError: If the object carries no ownership labels or
            labels of a different source
    """
    current = owner_of(obj)
    if current == owner:
        return
    holder = f"owned by {current}" if current else "not managed by addon-forge"
    raise ConflictError(f"{what} exists and is {holder}", details=f"requested by {owner}")
