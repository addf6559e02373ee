"""Helm release reconciliation."""

from .reconciler import (
    HelmReconciler,
    HelmReconcileResult,
    label_value,
    owned_releases,
)

__all__ = [
    "HelmReconciler",
    "HelmReconcileResult",
    "label_value",
    "owned_releases",
]
