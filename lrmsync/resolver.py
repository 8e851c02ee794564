#!/usr/bin/env python3
"""
Conflict resolver.

Strategies and per-conflict decisions are closed sets of small frozen classes
rather than strings. Every dispatch below ends in a TypeError branch so a new
variant cannot slip through unhandled.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from .errors import UnresolvedConflictsError
from .merge import Conflict, ConflictState, MergeResult
from .snapshot import Entry, EntryId, ResourceSnapshot


# Per-conflict decisions

@dataclass(frozen=True)
class TakeLocal:
    """Keep our side (which may be a deletion)."""


@dataclass(frozen=True)
class TakeRemote:
    """Keep their side (which may be a deletion)."""


@dataclass(frozen=True)
class TakeCustom:
    """Replace both sides with a value supplied by the caller."""
    value: str
    comment: Optional[str] = None


Decision = Union[TakeLocal, TakeRemote, TakeCustom]


# Strategies

@dataclass(frozen=True)
class AcceptLocal:
    """Every conflict resolves to ours."""


@dataclass(frozen=True)
class AcceptRemote:
    """Every conflict resolves to theirs."""


@dataclass(frozen=True)
class Prompt:
    """
    Caller-supplied decision for each conflict.

    Attributes:
        decisions: EntryId -> Decision. Must cover every unresolved conflict.
    """
    decisions: dict = field(default_factory=dict)


Strategy = Union[AcceptLocal, AcceptRemote, Prompt]


def strategy_from_name(name: Optional[str]) -> Optional[Strategy]:
    """Map CLI/config names onto strategies. 'none' means halt on conflict."""
    if name is None or name == "none":
        return None
    if name in ("local", "accept-local"):
        return AcceptLocal()
    if name in ("remote", "accept-remote"):
        return AcceptRemote()
    raise ValueError(f"Unknown resolution strategy: {name}. Available: none, local, remote")


def _decide(conflict: Conflict, decision: Decision) -> Conflict:
    if isinstance(decision, TakeLocal):
        return conflict.resolved(ConflictState.RESOLVED_LOCAL, conflict.ours)
    if isinstance(decision, TakeRemote):
        return conflict.resolved(ConflictState.RESOLVED_REMOTE, conflict.theirs)
    if isinstance(decision, TakeCustom):
        entry = Entry(conflict.id, decision.value, decision.comment)
        return conflict.resolved(ConflictState.RESOLVED_CUSTOM, entry)
    raise TypeError(f"Unknown decision variant: {decision!r}")


def _decision_for(conflict: Conflict, strategy: Strategy) -> Optional[Decision]:
    if isinstance(strategy, AcceptLocal):
        return TakeLocal()
    if isinstance(strategy, AcceptRemote):
        return TakeRemote()
    if isinstance(strategy, Prompt):
        return strategy.decisions.get(conflict.id)
    raise TypeError(f"Unknown strategy variant: {strategy!r}")


def resolve_conflicts(result: MergeResult, strategy: Strategy) -> list[Conflict]:
    """
    Close every unresolved conflict according to the strategy.

    Already-resolved conflicts are kept as they are.

    Raises:
        UnresolvedConflictsError: Prompt strategy lacks a decision for at least
            one unresolved conflict. Nothing is partially applied.
    """
    closed = []
    missing = []
    for conflict in result.conflicts:
        if conflict.is_resolved:
            closed.append(conflict)
            continue
        decision = _decision_for(conflict, strategy)
        if decision is None:
            missing.append(conflict)
            continue
        closed.append(_decide(conflict, decision))

    if missing:
        ids = ", ".join(str(c.id) for c in missing)
        raise UnresolvedConflictsError(
            f"{len(missing)} conflict(s) have no decision: {ids}",
            conflicts=missing,
        )
    return closed


def _ordered_ids(result: MergeResult) -> list[EntryId]:
    if result.order:
        return list(result.order)
    ordered: dict[EntryId, None] = {}
    for snapshot in (result.ours, result.theirs, result.base):
        for entry_id in snapshot.ids():
            ordered.setdefault(entry_id, None)
    return list(ordered)


def build_snapshot(result: MergeResult, conflicts: list[Conflict]) -> ResourceSnapshot:
    """Merged snapshot with the given (all resolved) conflicts substituted in."""
    decided = {c.id: c for c in conflicts}
    merged_index = result.merged.index()

    entries = []
    for entry_id in _ordered_ids(result):
        if entry_id in decided:
            entry = decided[entry_id].resolution
        else:
            entry = merged_index.get(entry_id)
        if entry is not None:
            entries.append(entry)
    return result.merged.replace_entries(entries)


def resolve(result: MergeResult, strategy: Strategy) -> ResourceSnapshot:
    """
    Produce the final snapshot for a merge result.

    Args:
        result: Output of merge()
        strategy: AcceptLocal, AcceptRemote or Prompt

    Returns:
        Final ResourceSnapshot. Neither the ledger nor any baseline is touched.

    Raises:
        UnresolvedConflictsError: see resolve_conflicts
    """
    if not result.conflicts:
        return result.merged
    return build_snapshot(result, resolve_conflicts(result, strategy))


def close(result: MergeResult, strategy: Strategy) -> MergeResult:
    """Copy of the merge result with its conflicts closed and merged snapshot final."""
    conflicts = resolve_conflicts(result, strategy)
    return MergeResult(
        base=result.base,
        ours=result.ours,
        theirs=result.theirs,
        merged=build_snapshot(result, conflicts),
        auto_merged=list(result.auto_merged),
        conflicts=conflicts,
        order=list(result.order),
    )
