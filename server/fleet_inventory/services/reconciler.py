"""Merge per-source device snapshots into one record per canonical identity."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from ..core.config import Settings, settings
from ..core.models import (
    GROUP_NAMES,
    SOURCE_PRECEDENCE,
    DeviceIdentity,
    DeviceRecord,
    PartialRecord,
    ReconcileWarning,
    SourceKind,
    WarningKind,
)

logger = logging.getLogger(__name__)

# Only these planes can report a device the provisioning source does not know.
ORPHAN_ORIGIN_KINDS = frozenset({SourceKind.ORCHESTRATION, SourceKind.VIRTUALIZATION})


@dataclass(frozen=True)
class SourceSnapshot:
    """Immutable per-source listing taken once the source has fully drained."""

    name: str
    kind: SourceKind
    entries: Tuple[Tuple[DeviceIdentity, PartialRecord], ...] = ()
    rank: Optional[int] = None

    @classmethod
    def from_pairs(
        cls,
        name: str,
        kind: SourceKind,
        pairs: Iterable[Tuple[DeviceIdentity, PartialRecord]],
        rank: Optional[int] = None,
    ) -> "SourceSnapshot":
        return cls(name=name, kind=kind, entries=tuple(pairs), rank=rank)

    @property
    def precedence(self) -> int:
        if self.rank is not None:
            return self.rank
        return SOURCE_PRECEDENCE[self.kind]


@dataclass(frozen=True)
class OrphanFilter:
    """Decide whether a device missing from the primary source is reported.

    The classifying field is the provisioning type of the machine's catalog.
    """

    provisioning_types: FrozenSet[str] = frozenset({"PVS"})
    include_unclassified: bool = False
    always: bool = False

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "OrphanFilter":
        config = config or settings
        return cls(
            provisioning_types=frozenset(config.get_orphan_provisioning_types()),
            include_unclassified=config.orphan_include_unclassified,
            always=config.orphan_always_include,
        )

    def __call__(self, record: PartialRecord) -> bool:
        if self.always:
            return True
        provisioning_type = record.provisioning_type()
        if not provisioning_type:
            return self.include_unclassified
        wanted = {value.upper() for value in self.provisioning_types}
        return provisioning_type.strip().upper() in wanted


@dataclass
class ReconcileResult:
    """Merged records plus the bookkeeping the manifest needs."""

    records: Dict[str, DeviceRecord] = field(default_factory=dict)
    orphan_counts: Dict[str, int] = field(default_factory=dict)
    warnings: List[ReconcileWarning] = field(default_factory=list)


Candidate = Tuple[SourceSnapshot, DeviceIdentity, PartialRecord]


@dataclass
class OrphanGroup:
    """Orphan candidates from several sources that describe one device.

    Members are kept in precedence order, so the first member is the
    highest-precedence sighting.
    """

    members: List[Candidate] = field(default_factory=list)

    @property
    def identity(self) -> DeviceIdentity:
        """First domain-qualified member identity, else the leading one."""
        for _snapshot, identity, _partial in self.members:
            if identity.domain:
                return identity
        return self.members[0][1]

    def accepts(self, identity: DeviceIdentity) -> bool:
        return all(member.matches(identity) for _snapshot, member, _partial in self.members)

    def classifier(self) -> PartialRecord:
        """Highest-precedence member carrying a provisioning type."""
        for _snapshot, _identity, partial in self.members:
            if partial.provisioning_type():
                return partial
        return self.members[0][2]


def group_orphan_candidates(
    candidates: Iterable[Candidate],
) -> Tuple[List[OrphanGroup], List[Tuple[Candidate, int]]]:
    """Group candidates by identity.

    Returns the groups and the candidates that matched more than one group,
    each with the number of groups it matched.
    """

    ordered = sorted(candidates, key=lambda candidate: -candidate[0].precedence)
    groups: List[OrphanGroup] = []
    by_short_name: Dict[str, List[OrphanGroup]] = {}
    ambiguous: List[Tuple[Candidate, int]] = []

    for candidate in ordered:
        identity = candidate[1]
        named = by_short_name.setdefault(identity.short_name, [])
        matching = [group for group in named if group.accepts(identity)]
        if len(matching) == 1:
            matching[0].members.append(candidate)
        elif matching:
            ambiguous.append((candidate, len(matching)))
        else:
            group = OrphanGroup(members=[candidate])
            named.append(group)
            groups.append(group)

    return groups, ambiguous


def _has_value(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, set, dict)) and not value:
        return False
    return True


class _MergeState:
    """Draft records under construction together with the rank that set each field.

    Drafts are plain dictionaries until ``build`` validates them into frozen
    ``DeviceRecord`` instances.
    """

    def __init__(self) -> None:
        self.drafts: Dict[str, Dict[str, Any]] = {}
        self.by_short_name: Dict[str, List[DeviceIdentity]] = {}
        self.field_ranks: Dict[Tuple[str, str, str], int] = {}

    def create(
        self,
        identity: DeviceIdentity,
        partial: PartialRecord,
        source: str,
        rank: int,
        *,
        orphan: bool = False,
    ) -> None:
        self.drafts[identity.canonical] = {
            "short_name": identity.short_name,
            "domain": identity.domain,
            "name": partial.name,
            "orphan": orphan,
            "provenance": source if orphan else None,
            "sources": [],
            "fetch_errors": {},
        }
        self.by_short_name.setdefault(identity.short_name, []).append(identity)
        self.merge(identity, partial, source, rank)

    def find(self, identity: DeviceIdentity) -> Tuple[List[DeviceIdentity], bool]:
        """Return matching identities and whether a domain conflict was seen."""

        candidates = self.by_short_name.get(identity.short_name, [])
        matching = [candidate for candidate in candidates if candidate.matches(identity)]
        conflict = any(candidate.conflicts_with(identity) for candidate in candidates)
        return matching, conflict

    def merge(self, identity: DeviceIdentity, partial: PartialRecord, source: str, rank: int) -> None:
        key = identity.canonical
        draft = self.drafts[key]
        contributed = False

        for group_name in GROUP_NAMES:
            incoming: Optional[BaseModel] = getattr(partial, group_name)
            if incoming is None:
                continue

            current: Optional[Dict[str, Any]] = draft.get(group_name)
            if current is None:
                current = draft[group_name] = {}
                contributed = True

            for field_name in type(incoming).model_fields:
                value = getattr(incoming, field_name)
                if not _has_value(value):
                    continue
                rank_key = (key, group_name, field_name)
                previous_rank = self.field_ranks.get(rank_key)
                if previous_rank is not None and previous_rank >= rank:
                    continue
                current[field_name] = _copy_value(value)
                self.field_ranks[rank_key] = rank
                contributed = True

        for group_name, status in partial.fetch_errors.items():
            draft["fetch_errors"].setdefault(group_name, status)

        if draft["name"] is None and partial.name:
            draft["name"] = partial.name
        if contributed and source not in draft["sources"]:
            draft["sources"].append(source)

    def build(self) -> Dict[str, DeviceRecord]:
        return {key: DeviceRecord.model_validate(self.drafts[key]) for key in sorted(self.drafts)}


def _copy_value(value: object) -> object:
    if isinstance(value, list):
        return list(value)
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    return value


class Reconciler:
    """Cross-source reconciliation against a designated primary source."""

    def __init__(self, orphan_filter: Optional[OrphanFilter] = None) -> None:
        self.orphan_filter = orphan_filter or OrphanFilter.from_settings()

    def reconcile(
        self,
        primary: SourceSnapshot,
        secondaries: Sequence[SourceSnapshot] = (),
    ) -> ReconcileResult:
        result = ReconcileResult()
        state = _MergeState()

        for identity, partial in self._dedupe(primary, result.warnings):
            state.create(identity, partial, primary.name, primary.precedence)

        primary_keys = set(state.drafts)
        logger.info(
            "Reconciling %d %s device(s) against %d secondary source(s)",
            len(primary_keys),
            primary.name,
            len(secondaries),
        )

        # Stable sort keeps configured order between sources of equal precedence.
        ordered = sorted(secondaries, key=lambda snapshot: -snapshot.precedence)
        orphan_candidates: List[Candidate] = []
        detached: List[Candidate] = []

        for snapshot in ordered:
            merged = 0
            for identity, partial in self._dedupe(snapshot, result.warnings):
                matching, conflict = state.find(identity)
                matching = [match for match in matching if match.canonical in primary_keys]

                if len(matching) == 1:
                    state.merge(matching[0], partial, snapshot.name, snapshot.precedence)
                    merged += 1
                elif len(matching) > 1:
                    self._conflict(
                        result,
                        snapshot,
                        identity,
                        f"{identity} matches {len(matching)} devices in {primary.name}; contribution dropped",
                    )
                elif conflict:
                    self._conflict(
                        result,
                        snapshot,
                        identity,
                        f"{identity} disagrees on domain with {primary.name}; contribution dropped",
                    )
                elif snapshot.kind in ORPHAN_ORIGIN_KINDS:
                    orphan_candidates.append((snapshot, identity, partial))
                else:
                    detached.append((snapshot, identity, partial))

            logger.debug("Merged %d device(s) from %s", merged, snapshot.name)

        groups, ambiguous = group_orphan_candidates(orphan_candidates)
        for (snapshot, identity, _partial), count in ambiguous:
            self._conflict(
                result,
                snapshot,
                identity,
                f"{identity} matches {count} orphan devices; contribution dropped",
            )
        for group in groups:
            self._place_orphan(state, result, group)

        orphan_keys = {key for key, draft in state.drafts.items() if draft["orphan"]}
        for snapshot, identity, partial in detached:
            matching, _ = state.find(identity)
            matching = [match for match in matching if match.canonical in orphan_keys]
            if len(matching) == 1:
                state.merge(matching[0], partial, snapshot.name, snapshot.precedence)
            else:
                logger.debug("Ignoring %s entry %s with no matching device", snapshot.name, identity)

        result.records = state.build()
        logger.info(
            "Reconciliation produced %d record(s), %d orphan(s), %d warning(s)",
            len(result.records),
            len(orphan_keys),
            len(result.warnings),
        )
        return result

    def _place_orphan(self, state: _MergeState, result: ReconcileResult, group: OrphanGroup) -> None:
        """Create one orphan record from every sighting of a device.

        The filter runs once per device, on the highest-precedence sighting
        that carries a classification.
        """

        identity = group.identity
        lead, _lead_identity, lead_partial = group.members[0]
        classifier = group.classifier()

        if not self.orphan_filter(classifier):
            logger.debug(
                "Orphan candidate %s from %s excluded (provisioning type %s)",
                identity,
                ", ".join(snapshot.name for snapshot, _identity, _partial in group.members),
                classifier.provisioning_type(),
            )
            return

        if identity.canonical in state.drafts:
            self._conflict(
                result,
                lead,
                identity,
                f"{identity} from {lead.name} collides with another orphan device; contribution dropped",
            )
            return

        state.create(identity, lead_partial, lead.name, lead.precedence, orphan=True)
        for snapshot, _member, partial in group.members[1:]:
            state.merge(identity, partial, snapshot.name, snapshot.precedence)

        result.orphan_counts[lead.name] = result.orphan_counts.get(lead.name, 0) + 1
        logger.info("Orphan device %s found in %s", identity, lead.name)

    def _dedupe(
        self,
        snapshot: SourceSnapshot,
        warnings: List[ReconcileWarning],
    ) -> List[Tuple[DeviceIdentity, PartialRecord]]:
        """First occurrence wins for identities repeated inside one source."""

        seen: Dict[str, List[DeviceIdentity]] = {}
        unique: List[Tuple[DeviceIdentity, PartialRecord]] = []

        for identity, partial in snapshot.entries:
            previous = seen.setdefault(identity.short_name, [])
            if any(other.matches(identity) for other in previous):
                message = f"{identity} reported more than once by {snapshot.name}; keeping first entry"
                logger.warning(message)
                warnings.append(
                    ReconcileWarning(
                        kind=WarningKind.DUPLICATE_IDENTITY,
                        message=message,
                        source=snapshot.name,
                        identity=identity.canonical,
                    )
                )
                continue
            previous.append(identity)
            unique.append((identity, partial))

        return unique

    @staticmethod
    def _conflict(
        result: ReconcileResult,
        snapshot: SourceSnapshot,
        identity: DeviceIdentity,
        message: str,
    ) -> None:
        logger.warning(message)
        result.warnings.append(
            ReconcileWarning(
                kind=WarningKind.MERGE_CONFLICT,
                message=message,
                source=snapshot.name,
                identity=identity.canonical,
            )
        )


__all__ = [
    "OrphanFilter",
    "OrphanGroup",
    "ReconcileResult",
    "Reconciler",
    "SourceSnapshot",
    "group_orphan_candidates",
]
