"""
Risk Assessor: how dangerous is a proposed mutation?

The assessor is a pure function of the change and the current state of its
targets. It never reads or writes a store itself; the confirmation gate
builds the ``ChangeDescriptor`` and asks.

Rules are table-driven. Each rule contributes a minimum level, a reason, and
optionally forces confirmation regardless of the final level. The overall
level is the highest any matching rule asks for, and confirmation is required
when that level reaches the configured threshold or any matching rule
forces it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional

import structlog

from careflow.config import RiskConfig
from careflow.types import RiskAssessment, RiskLevel

logger = structlog.get_logger(__name__)

ActionKind = Literal["create", "update", "delete"]


@dataclass
class ChangeDescriptor:
    """What the gate knows about a change when it asks for an assessment."""
    target_count: int = 1
    changed_fields: frozenset[str] = frozenset()
    removed_fields: frozenset[str] = frozenset()
    target_kinds: frozenset[str] = frozenset()
    target_created_at: tuple[float, ...] = ()
    touches_critical: bool = False
    structured: bool = False
    now: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RiskRule:
    name: str
    level: RiskLevel
    reason: str
    applies: Callable[["RiskContext"], bool]
    force_confirmation: bool = False


@dataclass(frozen=True)
class RiskContext:
    action: ActionKind
    kinds: frozenset[str]
    change: ChangeDescriptor
    config: RiskConfig


def _is_high_risk_kind(ctx: RiskContext) -> bool:
    return bool(ctx.kinds & set(ctx.config.high_risk_kinds))


def _is_bulk(ctx: RiskContext) -> bool:
    return ctx.change.target_count > 1


def _is_large_bulk(ctx: RiskContext) -> bool:
    return ctx.change.target_count > ctx.config.bulk_high_threshold


def _changes_status(ctx: RiskContext) -> bool:
    return ctx.action == "update" and "status" in ctx.change.changed_fields


def _removes_fields(ctx: RiskContext) -> bool:
    return ctx.action == "update" and bool(ctx.change.removed_fields)


def _touches_critical(ctx: RiskContext) -> bool:
    return ctx.action != "create" and ctx.change.touches_critical


def _deletes_structured(ctx: RiskContext) -> bool:
    return ctx.action == "delete" and ctx.change.structured


def _deletes_recent(ctx: RiskContext) -> bool:
    if ctx.action != "delete":
        return False
    threshold = ctx.config.recent_delete_seconds
    return any(ctx.change.now - created < threshold for created in ctx.change.target_created_at)


DEFAULT_RULES: tuple[RiskRule, ...] = (
    RiskRule(
        "high_risk_kind",
        RiskLevel.HIGH,
        "Medication changes can affect treatment",
        _is_high_risk_kind,
        force_confirmation=True,
    ),
    RiskRule(
        "critical_observation",
        RiskLevel.HIGH,
        "Change touches a critical observation value",
        _touches_critical,
        force_confirmation=True,
    ),
    RiskRule(
        "bulk",
        RiskLevel.MEDIUM,
        "Bulk operation affecting multiple records",
        _is_bulk,
        force_confirmation=True,
    ),
    RiskRule("large_bulk", RiskLevel.HIGH, "Large bulk operation", _is_large_bulk),
    RiskRule("status_change", RiskLevel.MEDIUM, "Status changes may affect care workflows", _changes_status),
    RiskRule("field_removal", RiskLevel.MEDIUM, "Removing fields may lose data", _removes_fields),
    RiskRule(
        "structured_delete",
        RiskLevel.MEDIUM,
        "Deleting structured clinical data",
        _deletes_structured,
        force_confirmation=True,
    ),
    RiskRule(
        "recent_delete",
        RiskLevel.LOW,
        "Deleting a recently added record",
        _deletes_recent,
        force_confirmation=True,
    ),
)


class RiskAssessor:
    def __init__(self, config: RiskConfig, rules: Optional[tuple[RiskRule, ...]] = None):
        self._config = config
        self._rules = rules if rules is not None else DEFAULT_RULES

    @property
    def confirm_at_level(self) -> RiskLevel:
        return self._config.confirm_at_level

    def assess(
        self,
        action_kind: ActionKind,
        resource_kind: str,
        change: ChangeDescriptor,
    ) -> RiskAssessment:
        kinds = frozenset({resource_kind.lower(), *(k.lower() for k in change.target_kinds)})
        ctx = RiskContext(action=action_kind, kinds=kinds, change=change, config=self._config)

        level = RiskLevel.LOW
        reasons: list[str] = []
        forced = False
        for rule in self._rules:
            if not rule.applies(ctx):
                continue
            level = level.at_least(rule.level)
            reasons.append(rule.reason)
            forced = forced or rule.force_confirmation

        requires_confirmation = forced or level.rank >= self._config.confirm_at_level.rank
        logger.debug(
            "risk_assessor.assessed",
            action=action_kind,
            resource_kind=resource_kind,
            level=level.value,
            requires_confirmation=requires_confirmation,
            reasons=len(reasons),
        )
        return RiskAssessment(level=level, reasons=reasons, requires_confirmation=requires_confirmation)
