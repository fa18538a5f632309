"""Durable plan proposals and their decisions."""

from __future__ import annotations

import json
import os
import re
import threading
import time
import uuid
from enum import StrEnum
from fnmatch import fnmatchcase
from pathlib import Path

from pydantic import BaseModel, Field

from sanctuary.errors import PlanDecisionError

LEGACY_DECISION_RE = re.compile(r"^\s*(APPROVED|DENIED)\s*:\s*(.+?)\s*$", re.IGNORECASE | re.DOTALL)


class PlanStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class PlanProposal(BaseModel):
    """Human-approvable description of intended mutating actions."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner: str
    title: str
    summary: str
    steps: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.PENDING
    created_at: float = Field(default_factory=time.time)
    decided_at: float | None = None
    note: str | None = None

    def covers(self, resource: str) -> bool:
        return any(resource == pattern or fnmatchcase(resource, pattern) for pattern in self.affected_resources)

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "steps": list(self.steps),
            "affectedResources": list(self.affected_resources),
            "status": self.status.value,
        }


class PlanDecision(BaseModel):
    """Structured approval or denial bound to one proposal id."""

    proposal_id: str
    approved: bool
    note: str | None = None


class PlanBook:
    """Proposals persisted in one JSON file; they outlive the turn that created them."""

    def __init__(self, home: Path) -> None:
        self._path = home.resolve() / "plans.json"
        self._lock = threading.Lock()

    def propose(
        self,
        owner: str,
        *,
        title: str,
        summary: str,
        steps: list[str],
        affected_resources: list[str],
    ) -> PlanProposal:
        proposal = PlanProposal(
            owner=owner,
            title=title,
            summary=summary,
            steps=list(steps),
            affected_resources=list(affected_resources),
        )
        with self._lock:
            plans = self._load_locked()
            plans[proposal.id] = proposal
            self._write_locked(plans)
        return proposal

    def get(self, proposal_id: str) -> PlanProposal | None:
        with self._lock:
            return self._load_locked().get(proposal_id)

    def proposals(self, owner: str | None = None, status: PlanStatus | None = None) -> list[PlanProposal]:
        with self._lock:
            plans = list(self._load_locked().values())
        return sorted(
            (
                plan
                for plan in plans
                if (owner is None or plan.owner == owner) and (status is None or plan.status == status)
            ),
            key=lambda plan: plan.created_at,
        )

    def decide(self, decision: PlanDecision) -> PlanProposal:
        with self._lock:
            plans = self._load_locked()
            proposal = plans.get(decision.proposal_id)
            if proposal is None:
                raise PlanDecisionError(f"unknown proposal {decision.proposal_id}")
            if proposal.status is not PlanStatus.PENDING:
                raise PlanDecisionError(f"proposal {proposal.id} is already {proposal.status.value}")
            proposal.status = PlanStatus.APPROVED if decision.approved else PlanStatus.DENIED
            # Rulings are totally ordered by decided_at, even within one clock tick.
            latest = max((plan.decided_at or 0.0 for plan in plans.values()), default=0.0)
            proposal.decided_at = max(time.time(), latest + 1e-6)
            proposal.note = decision.note
            self._write_locked(plans)
            return proposal

    def rulings(self, owner: str, resources: list[str]) -> dict[str, PlanProposal | None]:
        """Latest decided proposal of ``owner`` covering each resource, by decision time."""
        decided = sorted(
            (plan for plan in self.proposals(owner) if plan.status is not PlanStatus.PENDING),
            key=lambda plan: plan.decided_at or 0.0,
        )
        latest: dict[str, PlanProposal | None] = {}
        for resource in resources:
            latest[resource] = next((plan for plan in reversed(decided) if plan.covers(resource)), None)
        return latest

    def overriding_denial(self, owner: str, resources: list[str]) -> PlanProposal | None:
        """A denial that is the latest ruling on any of ``resources``."""
        for ruling in self.rulings(owner, resources).values():
            if ruling is not None and ruling.status is PlanStatus.DENIED:
                return ruling
        return None

    def approved_covering(self, owner: str, resources: list[str]) -> PlanProposal | None:
        """Most recent approved proposal of ``owner`` covering every resource.

        A later denial of any of the resources withdraws earlier approvals for it.
        """
        if self.overriding_denial(owner, resources) is not None:
            return None
        for proposal in reversed(self.proposals(owner, PlanStatus.APPROVED)):
            if all(proposal.covers(resource) for resource in resources):
                return proposal
        return None

    def decision_from_text(self, owner: str, text: str) -> PlanDecision | None:
        """Translate an ``APPROVED: <title>`` style message into a structured decision.

        Only binds when exactly one pending proposal of ``owner`` carries the title.
        """
        match = LEGACY_DECISION_RE.match(text)
        if match is None:
            return None
        verdict, title = match.groups()
        candidates = [
            plan for plan in self.proposals(owner, PlanStatus.PENDING) if plan.title.casefold() == title.casefold()
        ]
        if len(candidates) != 1:
            raise PlanDecisionError(f"{len(candidates)} pending proposals titled {title!r}")
        return PlanDecision(proposal_id=candidates[0].id, approved=verdict.upper() == "APPROVED")

    def _load_locked(self) -> dict[str, PlanProposal]:
        if not self._path.exists():
            return {}
        raw = json.loads(self._path.read_text(encoding="utf-8"))
        return {key: PlanProposal.model_validate(value) for key, value in raw.items()}

    def _write_locked(self, plans: dict[str, PlanProposal]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps({key: plan.model_dump(mode="json") for key, plan in plans.items()}, ensure_ascii=False),
            encoding="utf-8",
        )
        os.replace(tmp, self._path)
