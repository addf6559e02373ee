"""Adapters to external systems: the target cluster and the helm CLI."""
