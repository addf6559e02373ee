"""Main CLI application module.

Commands:
- deploy: deploy a feature's content sources to a cluster
- undeploy: remove everything a feature deployed
- helm-reconcile: bring Helm releases in line with a release list
- hash: print the content hash of manifest files
"""

import typer

from .commands import deploy, hash_manifests, helm_reconcile, undeploy

# Create the main CLI application
app = typer.Typer(
    help="addon-forge - deploy add-ons to Kubernetes clusters and keep them reconciled",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("deploy")(deploy)
app.command("undeploy")(undeploy)
app.command("helm-reconcile")(helm_reconcile)
app.command("hash")(hash_manifests)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
