"""Per-cluster reports.

A report lists, per resource or Helm release, what the engine did (or, in
DryRun mode, what it would do). Rendering a report for users is left to
the caller.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from .models import (
    DeploymentOutcome,
    DocumentError,
    ReleaseStatus,
    ResourceIdentity,
    StaleResult,
)


class ReportAction(StrEnum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    CONFLICT = "Conflict"
    NO_ACTION = "NoAction"
    INSTALL = "Install"
    UPGRADE = "Upgrade"
    UNINSTALL = "Uninstall"
    ERROR = "Error"


class ResourceReport(BaseModel):
    """Action taken on one resource."""

    resource: ResourceIdentity | None = None
    action: ReportAction
    message: str = ""


class ReleaseReport(BaseModel):
    """Action taken on one Helm release."""

    release_name: str
    release_namespace: str
    chart_version: str = ""
    status: ReleaseStatus
    action: ReportAction
    message: str = ""


class ClusterReport(BaseModel):
    """Everything the engine did, or would do, on one cluster."""

    cluster: str
    dry_run: bool = False
    resource_reports: list[ResourceReport] = Field(default_factory=list)
    release_reports: list[ReleaseReport] = Field(default_factory=list)

    def add_outcome(self, outcome: DeploymentOutcome) -> None:
        """Append one entry per resource of a deployment outcome."""
        for action, identities in (
            (ReportAction.CREATE, outcome.created),
            (ReportAction.UPDATE, outcome.updated),
            (ReportAction.CONFLICT, outcome.conflicted),
            (ReportAction.NO_ACTION, outcome.unchanged),
        ):
            for identity in sorted(identities, key=lambda i: i.key):
                self.resource_reports.append(
                    ResourceReport(resource=identity, action=action)
                )
        self.add_errors(outcome.errors)

    def add_stale(self, result: StaleResult) -> None:
        failed = {e.identity for e in result.errors}
        for identity in sorted(result.stale - failed, key=lambda i: i.key):
            self.resource_reports.append(
                ResourceReport(resource=identity, action=ReportAction.DELETE)
            )
        self.add_errors(result.errors)

    def add_errors(self, errors: list[DocumentError]) -> None:
        for error in errors:
            self.resource_reports.append(
                ResourceReport(
                    resource=error.identity,
                    action=ReportAction.ERROR,
                    message=str(error),
                )
            )

    def count(self, action: ReportAction) -> int:
        return sum(1 for r in self.resource_reports if r.action == action) + sum(
            1 for r in self.release_reports if r.action == action
        )
