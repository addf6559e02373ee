"""addon-forge: deploys add-ons to Kubernetes clusters and keeps them reconciled."""

__version__ = "0.1.0"
