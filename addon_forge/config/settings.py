"""Engine configuration model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from addon_forge.core.constants import DEFAULT_CONSTANTS
from addon_forge.infra.k8s.utils import parse_timeout

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class EngineConfig(BaseModel):
    """Read-only configuration snapshot handed to the engine at call time.

    Attributes:
        api_timeout_seconds: Seconds allowed for each cluster API call
        default_namespace: Namespace for namespaced objects that set none
        helm_binary: Helm executable
        helm_timeout: Helm --timeout value, e.g. "10m"
        record_store_path: YAML file the CLI keeps records in
        log_level: loguru level for the CLI
        script_prelude: Script fragments prepended to every evaluated script
        kubeconfig: Kubeconfig path; None uses the default resolution
        context: Kubeconfig context; None uses the current one
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    api_timeout_seconds: float = Field(default=DEFAULT_CONSTANTS.API_TIMEOUT_SECONDS, gt=0)
    default_namespace: str = DEFAULT_CONSTANTS.DEFAULT_NAMESPACE
    helm_binary: str = "helm"
    helm_timeout: str = DEFAULT_CONSTANTS.HELM_TIMEOUT
    record_store_path: Path = Path(".addon-forge/records.yaml")
    log_level: str = "INFO"
    script_prelude: list[str] = Field(default_factory=list)
    kubeconfig: str | None = None
    context: str | None = None

    @field_validator("helm_timeout")
    @classmethod
    def _check_helm_timeout(cls, value: str) -> str:
        try:
            parse_timeout(value)
        except ValueError as e:
            raise ValueError(f"Invalid helm timeout '{value}'") from e
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level '{value}'")
        return level

    @field_validator("kubeconfig", "context")
    @classmethod
    def _empty_is_default(cls, value: str | None) -> str | None:
        # "${KUBECONFIG:-}" substitutes to an empty string
        return value or None
