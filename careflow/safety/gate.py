"""
Confirmation Gate: propose, confirm, apply.

Every mutating record tool goes through this gate. ``propose()`` reads the
current state of the targets and returns a ``Preview`` (before/after plus a
risk assessment) without touching any record. ``commit()`` applies the
change, unless the assessment requires confirmation and none was given, in
which case it raises ``PendingConfirmation`` carrying the preview.

Commits are de-duplicated through a bounded idempotency ledger. The key is
either supplied by the caller or derived from the change itself, so
re-sending the same confirmed change returns the original result flagged as
a replay instead of applying it twice. Each ledger entry also records the
fingerprint of the change it applied; a key reused for a different change
is refused with ``IdempotencyConflict``.

A bulk update or delete is applied target by target. If it stops partway,
the targets already written are remembered under the commit's key, and a
retry with the same key applies only the rest.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
import uuid
from collections import OrderedDict
from typing import Any, Literal, Optional

import structlog
from pydantic import BaseModel, Field

from careflow.errors import IdempotencyConflict, InvalidArguments, PendingConfirmation, ResourceNotFound
from careflow.records.models import DOCUMENT_KIND, Resource, apply_changes
from careflow.records.store import DocumentStore
from careflow.safety.risk import ChangeDescriptor, RiskAssessor
from careflow.types import RiskAssessment

logger = structlog.get_logger(__name__)

_MAX_PENDING_PROPOSALS = 256


class ProposedChange(BaseModel):
    action: Literal["create", "update", "delete"]
    subject_id: str
    resource_kind: str = DOCUMENT_KIND
    resource_ids: list[str] = Field(default_factory=list)
    changes: dict[str, Any] = Field(default_factory=dict)
    title: str = ""
    content: str = ""
    description: str = ""

    def fingerprint(self) -> str:
        """sha256 over the canonical JSON of everything that affects the outcome."""
        canonical = self.model_dump(mode="json", exclude={"description"})
        canonical["resource_ids"] = sorted(canonical["resource_ids"])
        blob = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class Preview(BaseModel):
    proposal_id: str = Field(default_factory=lambda: f"prop_{uuid.uuid4().hex[:12]}")
    change: ProposedChange
    assessment: RiskAssessment
    before: list[dict[str, Any]] = Field(default_factory=list)
    after: list[dict[str, Any]] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    turn_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    @property
    def requires_confirmation(self) -> bool:
        return self.assessment.requires_confirmation


class CommitResult(BaseModel):
    action: str
    resource_ids: list[str] = Field(default_factory=list)
    resources: list[dict[str, Any]] = Field(default_factory=list)
    idempotency_key: str
    replayed: bool = False


def _snapshot(resource: Resource) -> dict[str, Any]:
    return resource.model_dump(mode="json", exclude={"created_at", "updated_at"})


class ConfirmationGate:
    def __init__(self, store: DocumentStore, assessor: RiskAssessor, ledger_size: int = 1024):
        self._store = store
        self._assessor = assessor
        # key -> (fingerprint of the applied change, result)
        self._ledger: OrderedDict[str, tuple[str, CommitResult]] = OrderedDict()
        self._ledger_size = max(1, int(ledger_size))
        # key -> targets already written by an interrupted bulk commit
        self._partial: dict[str, dict[str, Resource]] = {}
        self._proposals: OrderedDict[str, Preview] = OrderedDict()
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Propose
    # -------------------------------------------------------------------------

    async def _load_targets(self, change: ProposedChange) -> list[Resource]:
        targets: list[Resource] = []
        for resource_id in dict.fromkeys(change.resource_ids):
            resource = await self._store.get(resource_id)
            # Resources belonging to another subject are reported as missing.
            if resource is None or resource.subject_id != change.subject_id:
                raise ResourceNotFound(resource_id)
            targets.append(resource)
        return targets

    def _validate(self, change: ProposedChange) -> None:
        if change.action == "create":
            if change.resource_ids:
                raise InvalidArguments("A create must not name existing resource ids.")
            if not (change.title or change.content or change.changes):
                raise InvalidArguments("A create needs a title, content, or fields.")
        elif not change.resource_ids:
            raise InvalidArguments(f"An {change.action} needs at least one resource id.")
        if change.action == "update" and not change.changes:
            raise InvalidArguments("An update needs at least one field change.")

    async def propose(
        self,
        change: ProposedChange,
        conversation_id: Optional[str] = None,
        turn_id: Optional[str] = None,
    ) -> Preview:
        """Build a preview of ``change``. Reads the store, never writes it."""
        preview = await self._build_preview(change, conversation_id, turn_id)
        self._remember(preview)
        logger.info(
            "confirmation_gate.proposed",
            proposal_id=preview.proposal_id,
            action=change.action,
            resource_kind=change.resource_kind,
            targets=len(change.resource_ids),
            level=preview.assessment.level.value,
            requires_confirmation=preview.requires_confirmation,
        )
        return preview

    async def _build_preview(
        self,
        change: ProposedChange,
        conversation_id: Optional[str],
        turn_id: Optional[str],
        proposal_id: Optional[str] = None,
    ) -> Preview:
        self._validate(change)
        targets = await self._load_targets(change)

        if change.action == "create":
            draft = Resource(
                resource_id="(new)",
                subject_id=change.subject_id,
                kind=change.resource_kind,
                title=change.title,
                content=change.content,
            )
            before: list[dict[str, Any]] = []
            after = [_snapshot(apply_changes(draft, change.changes))]
        elif change.action == "update":
            before = [_snapshot(r) for r in targets]
            after = [_snapshot(apply_changes(r, change.changes)) for r in targets]
        else:
            before = [_snapshot(r) for r in targets]
            after = []

        descriptor = ChangeDescriptor(
            target_count=max(1, len(targets)),
            changed_fields=frozenset(k for k, v in change.changes.items() if v is not None),
            removed_fields=frozenset(k for k, v in change.changes.items() if v is None),
            target_kinds=frozenset(r.kind for r in targets),
            target_created_at=tuple(r.created_at for r in targets),
            touches_critical=(
                any(r.critical for r in targets)
                or bool(change.changes.get("critical"))
                or change.changes.get("interpretation") == "critical"
            ),
            structured=(
                any(r.structured for r in targets)
                if targets else change.resource_kind != DOCUMENT_KIND
            ),
        )
        assessment = self._assessor.assess(change.action, change.resource_kind, descriptor)

        preview = Preview(
            change=change,
            assessment=assessment,
            before=before,
            after=after,
            conversation_id=conversation_id,
            turn_id=turn_id,
        )
        if proposal_id:
            preview.proposal_id = proposal_id
        return preview

    def _remember(self, preview: Preview) -> None:
        self._proposals[preview.proposal_id] = preview
        while len(self._proposals) > _MAX_PENDING_PROPOSALS:
            self._proposals.popitem(last=False)

    def get_proposal(self, proposal_id: str) -> Optional[Preview]:
        return self._proposals.get(proposal_id)

    def pending_for(self, conversation_id: str) -> list[Preview]:
        return [p for p in self._proposals.values() if p.conversation_id == conversation_id]

    def discard(self, proposal_id: str) -> bool:
        return self._proposals.pop(proposal_id, None) is not None

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    async def commit(
        self,
        change: ProposedChange,
        confirmed: bool = False,
        idempotency_key: Optional[str] = None,
        conversation_id: Optional[str] = None,
        turn_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
    ) -> CommitResult:
        """
        Apply ``change`` if allowed.

        Raises ``PendingConfirmation`` when the assessment requires
        confirmation and ``confirmed`` is false; nothing is written in that
        case and the preview is kept as a pending proposal. A key already in
        the ledger returns the recorded result with ``replayed=True``, or
        raises ``IdempotencyConflict`` when it was recorded for another change.
        """
        fingerprint = change.fingerprint()
        key = idempotency_key or fingerprint
        async with self._lock:
            replay = self._replay(key, fingerprint)
            if replay is not None:
                return replay

            done = self._partial.get(key, {})
            remaining = change
            if done:
                remaining = change.model_copy(
                    update={"resource_ids": [r for r in change.resource_ids if r not in done]}
                )
                logger.info("confirmation_gate.resuming_partial", already_applied=sorted(done))

            if remaining.action == "create" or remaining.resource_ids:
                # Re-assess against current state; the targets may have changed
                # since the proposal was staged.
                preview = await self._build_preview(remaining, conversation_id, turn_id, proposal_id)
                if preview.requires_confirmation and not confirmed and not done:
                    self._remember(preview)
                    logger.info(
                        "confirmation_gate.pending",
                        proposal_id=preview.proposal_id,
                        level=preview.assessment.level.value,
                    )
                    raise PendingConfirmation(preview)
                await self._apply(remaining, key)

            resources = self._collect_applied(change, key)
            result = CommitResult(
                action=change.action,
                resource_ids=[r.resource_id for r in resources],
                resources=[_snapshot(r) for r in resources],
                idempotency_key=key,
            )
            self._partial.pop(key, None)
            self._ledger[key] = (fingerprint, result)
            while len(self._ledger) > self._ledger_size:
                self._ledger.popitem(last=False)

            for pid in [p.proposal_id for p in self._proposals.values() if p.change.fingerprint() == fingerprint]:
                self._proposals.pop(pid, None)

        logger.info(
            "confirmation_gate.committed",
            action=change.action,
            resource_ids=result.resource_ids,
            confirmed=confirmed,
        )
        return result

    async def commit_proposal(
        self,
        proposal_id: str,
        confirmed: bool = False,
        idempotency_key: Optional[str] = None,
        turn_id: Optional[str] = None,
    ) -> CommitResult:
        """
        Commit a previously staged proposal.

        Confirmation is only honored on a later turn than the one that staged
        the proposal, so a reasoning loop cannot confirm its own preview. The
        idempotency key defaults to the proposal id.
        """
        key = idempotency_key or proposal_id
        preview = self._proposals.get(proposal_id)
        async with self._lock:
            entry = self._ledger.get(key)
        if entry is not None:
            # A committed proposal is no longer pending, so only its key identifies it.
            fingerprint = preview.change.fingerprint() if preview is not None else entry[0]
            replay = self._replay(key, fingerprint)
            if replay is not None:
                return replay

        if preview is None:
            raise ResourceNotFound(proposal_id, f"Unknown or expired proposal: {proposal_id}")

        if confirmed and turn_id is not None and preview.turn_id == turn_id:
            logger.warning("confirmation_gate.same_turn_confirmation_ignored", proposal_id=proposal_id)
            confirmed = False

        return await self.commit(
            preview.change,
            confirmed=confirmed,
            idempotency_key=key,
            conversation_id=preview.conversation_id,
            turn_id=preview.turn_id,
            proposal_id=proposal_id,
        )

    def _replay(self, key: str, fingerprint: str) -> Optional[CommitResult]:
        entry = self._ledger.get(key)
        if entry is None:
            return None
        recorded_fingerprint, recorded = entry
        if recorded_fingerprint != fingerprint:
            logger.warning("confirmation_gate.idempotency_conflict", idempotency_key=key[:16])
            raise IdempotencyConflict(key)
        logger.info("confirmation_gate.replayed", idempotency_key=key[:16])
        return recorded.model_copy(update={"replayed": True})

    def _collect_applied(self, change: ProposedChange, key: str) -> list[Resource]:
        applied = self._partial.get(key, {})
        if change.action == "create":
            return list(applied.values())
        return [applied[rid] for rid in dict.fromkeys(change.resource_ids) if rid in applied]

    async def _apply(self, change: ProposedChange, key: str) -> None:
        """Write ``change``, recording each written target under ``key`` as it lands."""
        progress = self._partial.setdefault(key, {})
        try:
            await self._write(change, progress)
        except BaseException:
            if progress:
                logger.error(
                    "confirmation_gate.partially_applied",
                    idempotency_key=key[:16],
                    applied=sorted(progress),
                )
            else:
                self._partial.pop(key, None)
            raise

    async def _write(self, change: ProposedChange, progress: dict[str, Resource]) -> None:
        if change.action == "create":
            fields = dict(change.changes)
            status = fields.pop("status", None)
            resource = Resource(
                subject_id=change.subject_id,
                kind=change.resource_kind,
                title=change.title or fields.pop("title", ""),
                content=change.content or fields.pop("content", ""),
                fields=fields,
                status=status,
            )
            created = await self._store.create(resource)
            progress[created.resource_id] = created
            return

        for resource_id in dict.fromkeys(change.resource_ids):
            if change.action == "update":
                resource = await self._store.update(resource_id, change.changes)
            else:
                resource = await self._store.delete(resource_id)
            if resource is None:
                raise ResourceNotFound(resource_id)
            progress[resource_id] = resource
