"""Deployment and reconciliation engine.

- hashing: change detection
- deployer: applies manifest bundles
- collector: removes resources a source no longer wants
- helm: Helm release state machine
- engine: per-(cluster, feature) orchestration
"""
