"""Rendering collaborators and template resource references.

Template expansion and script evaluation are external collaborators: the
engine hands them a source string plus named context objects and
consumes the rendered manifests they return.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger
from addon_forge.infra.k8s.utils import bounded

from .constants import DEFAULT_CONSTANTS
from .errors import RenderError
from .models import CallContext, ContentSource, ResourceIdentity, TemplateResourceRef

if TYPE_CHECKING:
    from addon_forge.infra.k8s.client import ClusterClient


class TemplateRenderer(Protocol):
    """Expands a text template against named context objects."""

    def render(self, template: str, context_objects: dict[str, Any]) -> str: ...


class ScriptEvaluator(Protocol):
    """Runs a script against named context objects and returns manifests."""

    def evaluate(self, script: str, context_objects: dict[str, Any]) -> str: ...


def render_source(
    source: ContentSource,
    context_objects: dict[str, Any],
    *,
    renderer: TemplateRenderer | None = None,
    evaluator: ScriptEvaluator | None = None,
    script_prelude: list[str] | None = None,
) -> list[str]:
    """Produce the rendered manifests of one content source.

    Data values are processed in key order. Plain values are returned as
    they are; template values go through ``renderer``; script values go
    through ``evaluator`` with ``script_prelude`` prepended.

    Raises:
        RenderError: If a collaborator is missing or fails
    """
    rendered = []
    for key in sorted(source.data):
        content = source.decoded(key)
        if source.script:
            if evaluator is None:
                raise RenderError(f"{source.owner} holds scripts but no evaluator is set")
            script = "\n".join([*(script_prelude or []), content])
            try:
                content = evaluator.evaluate(script, context_objects)
            except Exception as e:
                raise RenderError(f"Script {key} of {source.owner} failed", str(e)) from e
        elif source.template:
            if renderer is None:
                raise RenderError(f"{source.owner} holds templates but no renderer is set")
            try:
                content = renderer.render(content, context_objects)
            except Exception as e:
                raise RenderError(f"Template {key} of {source.owner} failed", str(e)) from e
        logger.debug(f"Rendered {key} of {source.owner} ({len(content)} bytes)")
        rendered.append(content)
    return rendered


# =============================================================================
# Template resource references
# =============================================================================


_PLACEHOLDER = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")


def resolve_namespace(ref: TemplateResourceRef, cluster_namespace: str) -> str:
    return ref.namespace or cluster_namespace


def resolve_name(ref: TemplateResourceRef, cluster_namespace: str, cluster_name: str) -> str:
    """Expand cluster placeholders in a reference's name.

    Raises:
        RenderError: If the name uses an unknown placeholder
    """
    values = {"ClusterNamespace": cluster_namespace, "ClusterName": cluster_name}

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in values:
            raise RenderError(f"Unknown placeholder '{key}' in name '{ref.name}'")
        return values[key]

    return _PLACEHOLDER.sub(replace, ref.name)


async def collect_template_resources(
    client: ClusterClient,
    refs: list[TemplateResourceRef],
    cluster_namespace: str,
    cluster_name: str,
    ctx: CallContext | None = None,
) -> dict[str, dict[str, Any]]:
    """Fetch referenced objects, keyed by identifier.

    Objects that do not exist are skipped.
    """
    timeout = ctx.timeout if ctx else DEFAULT_CONSTANTS.API_TIMEOUT_SECONDS
    result: dict[str, dict[str, Any]] = {}
    for ref in refs:
        namespaced = await bounded(
            client.is_namespaced(ref.gvk), timeout, f"discover {ref.gvk}"
        )
        identity = ResourceIdentity(
            group=ref.gvk.group,
            version=ref.gvk.version,
            kind=ref.gvk.kind,
            namespace=resolve_namespace(ref, cluster_namespace) if namespaced else "",
            name=resolve_name(ref, cluster_namespace, cluster_name),
        )
        obj = await bounded(client.get(identity), timeout, f"get {identity}")
        if obj is None:
            logger.debug(f"Template resource {ref.identifier} ({identity}) not found")
            continue
        result[ref.identifier] = obj
    return result
