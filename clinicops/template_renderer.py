"""Placeholder substitution for notification subjects and bodies.

Two placeholder syntaxes are understood and resolved against the same map:
``{{name}}`` and ``{name}``.  Substitution happens in a single pass so a value
containing braces is never expanded again.  Placeholders without a matching
variable are left untouched; delivery must not fail merely because an optional
variable was not supplied.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

import structlog

from clinicops.errors import RenderingSkippedError


logger = structlog.get_logger(__name__)


# Double-brace form first so ``{{a}}`` is never read as ``{`` + ``{a}`` + ``}``.
PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}|\{\s*([^{}]+?)\s*\}")


@dataclass(frozen=True)
class RenderResult:
    text: str
    unresolved: Tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.unresolved


def render_with_report(
    body: Optional[str],
    variables: Optional[Mapping[str, str]] = None,
) -> RenderResult:
    """Render *body* and report which placeholder names could not be resolved."""

    if not body:
        return RenderResult(text="")

    values = variables or {}
    unresolved: List[str] = []

    def _substitute(match: "re.Match[str]") -> str:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        if name in values and values[name] is not None:
            return str(values[name])
        unresolved.append(name)
        return match.group(0)

    text = PLACEHOLDER_RE.sub(_substitute, body)
    seen: List[str] = []
    for name in unresolved:
        if name not in seen:
            seen.append(name)
    return RenderResult(text=text, unresolved=tuple(seen))


def render(
    body: Optional[str],
    variables: Optional[Mapping[str, str]] = None,
    *,
    strict: bool = False,
) -> str:
    """Return *body* with placeholders substituted from *variables*.

    In the default lenient mode unresolved placeholders are kept verbatim and
    logged.  ``strict=True`` raises :class:`RenderingSkippedError` instead.
    """

    result = render_with_report(body, variables)
    if result.unresolved:
        if strict:
            raise RenderingSkippedError(list(result.unresolved))
        logger.warning(
            "template_placeholders_unresolved",
            placeholders=list(result.unresolved),
            provided=sorted((variables or {}).keys()),
        )
    return result.text


__all__ = ["PLACEHOLDER_RE", "RenderResult", "render", "render_with_report"]
