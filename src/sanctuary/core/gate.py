"""Safety gate for the privileged operator mode."""

from __future__ import annotations

import re
from typing import Any

from loguru import logger
from pydantic import BaseModel

from sanctuary.core.types import Effect, ToolResult
from sanctuary.store.plans import PlanBook
from sanctuary.tools.context import ToolContext
from sanctuary.tools.registry import ToolSpec

MUTATING_KEYWORDS = (
    "DROP",
    "DELETE",
    "UPDATE",
    "INSERT",
    "ALTER",
    "TRUNCATE",
    "GRANT",
    "REVOKE",
    "CREATE",
    "REPLACE",
    "MERGE",
    "EXEC",
    "EXECUTE",
    "UNION",
    "ATTACH",
    "DETACH",
    "PRAGMA",
    "VACUUM",
    "INTO",
    "OUTFILE",
    "DUMPFILE",
    "LOAD_FILE",
)
_KEYWORD_RE = re.compile(r"\b(" + "|".join(MUTATING_KEYWORDS) + r")\b", re.IGNORECASE)
_LEADING_RE = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_COMMENT_RE = re.compile(r"--|/\*|\*/|#")


def scan_query(query: str) -> str | None:
    """Return why ``query`` is not a plain read, or None when it is."""
    if not _LEADING_RE.match(query):
        return "only SELECT or WITH queries are allowed"
    if _COMMENT_RE.search(query):
        return "comments are not allowed in queries"
    if ";" in query.strip().rstrip(";"):
        return "multiple statements are not allowed"
    found = _KEYWORD_RE.search(query)
    if found is not None:
        return f"forbidden keyword {found.group(1).upper()}"
    return None


def denial(reason: str, **extra: Any) -> ToolResult:
    return ToolResult.failure(reason, data={"denied": True, "reason": reason, "hint": "propose_plan", **extra})


class SafetyGate:
    """Decides whether a privileged call may run.

    Query-shaped calls are scanned first and rejected regardless of any
    approval. Mutating calls need an approved proposal covering every
    resource they declare.
    """

    def __init__(self, plans: PlanBook) -> None:
        self._plans = plans

    def check(self, spec: ToolSpec, params: BaseModel, context: ToolContext) -> ToolResult | None:
        if spec.query_field is not None:
            reason = scan_query(str(getattr(params, spec.query_field, "")))
            if reason is not None:
                logger.warning("gate.query.rejected tool={} reason={}", spec.name, reason)
                return ToolResult.failure(reason, data={"denied": True, "reason": reason})

        if spec.effect is not Effect.MUTATING:
            return None

        resources = spec.resources_for(params, context) or [f"tool:{spec.name}"]
        withdrawn = self._plans.overriding_denial(context.user_id, resources)
        if withdrawn is not None:
            logger.info("gate.denied tool={} denied_by={}", spec.name, withdrawn.id)
            return denial(
                f"plan {withdrawn.id} ({withdrawn.title}) was denied; propose a different plan",
                resources=resources,
                denied_plan=withdrawn.id,
            )
        proposal = self._plans.approved_covering(context.user_id, resources)
        if proposal is None:
            logger.info("gate.denied tool={} resources={}", spec.name, resources)
            return denial(
                f"{spec.name} requires an approved plan covering {', '.join(resources) or 'this action'}",
                resources=resources,
            )
        logger.info("gate.allowed tool={} proposal={}", spec.name, proposal.id)
        return None
