"""Incremental match engine: find, verify and rank candidates, then cluster."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from recman.metadata import MetadataRecordError
from recman.storage import KEY_TYPES

from .verification import build_match_profile, verify_match

if TYPE_CHECKING:
    from recman.config import RecmanConfig
    from recman.metadata import MetadataRecordRegistry
    from recman.storage import KeyType, RecordsRepository, StoredRecord

    from .cluster_store import ClusterStore
    from .match_contract import MatchDecision
    from .verification import MatchProfile

logger = logging.getLogger(__name__)

OutcomeDecision = Literal["joined", "created", "unclustered", "skipped"]


@dataclass(frozen=True, slots=True)
class CandidateRule:
    """One candidate search step: a key type against (un)clustered records."""

    key_type: KeyType
    clustered: bool

    @property
    def name(self) -> str:
        """Return a stable label used in logs and outcomes."""
        state = "clustered" if self.clustered else "unclustered"
        return f"{self.key_type}:{state}"


CANDIDATE_RULES: tuple[CandidateRule, ...] = (
    CandidateRule(key_type="isbn", clustered=True),
    CandidateRule(key_type="id", clustered=True),
    CandidateRule(key_type="isbn", clustered=False),
    CandidateRule(key_type="id", clustered=False),
    CandidateRule(key_type="title", clustered=True),
    CandidateRule(key_type="title", clustered=False),
)


@dataclass(frozen=True, slots=True)
class CandidateMatch:
    """A verified candidate and the facts used to rank it."""

    record: StoredRecord
    rule: CandidateRule
    key_overlap: int
    decision: MatchDecision

    def rank_key(self) -> tuple[int, int, str, str]:
        """Sort key: clustered first, richest overlap, earliest, lowest id."""
        return (
            0 if self.record.dedup_id is not None else 1,
            -self.key_overlap,
            self.record.created.isoformat(),
            self.record.record_id,
        )


@dataclass(frozen=True, slots=True)
class MatchOutcome:
    """Result of evaluating one record."""

    record_id: str
    decision: OutcomeDecision
    dedup_id: str | None = None
    matched_record_id: str | None = None
    rule: str | None = None
    reason: str | None = None

    @property
    def clustered(self) -> bool:
        """Return true when the record ended up in a cluster."""
        return self.decision in ("joined", "created")


class MatchEngine:
    """Evaluate one record against the store and update its cluster."""

    _records: RecordsRepository
    _clusters: ClusterStore
    _registry: MetadataRecordRegistry
    _config: RecmanConfig

    def __init__(
        self,
        *,
        records_repository: RecordsRepository,
        cluster_store: ClusterStore,
        metadata_registry: MetadataRecordRegistry,
        config: RecmanConfig,
    ) -> None:
        """Create engine over explicit store and configuration dependencies."""
        self._records = records_repository
        self._clusters = cluster_store
        self._registry = metadata_registry
        self._config = config

    async def evaluate(self, record: StoredRecord) -> MatchOutcome:
        """Find the best verified duplicate for `record` and cluster them.

        Records that cannot take part in dedup are taken out of any cluster
        they still belong to. A record with no verified match ends up
        unclustered. In every case `update_needed` is cleared.
        """
        if not self._is_dedup_eligible(record):
            await self._leave_cluster(record)
            return MatchOutcome(record_id=record.record_id, decision="skipped")

        logger.debug("Deduplicating %s", record.record_id)
        profile = self._build_profile(record)
        matches: list[CandidateMatch] = []
        if profile is not None:
            matches = await self._find_matches(record, profile)

        for match in sorted(matches, key=CandidateMatch.rank_key):
            outcome = await self._mark_duplicates(record.record_id, match)
            if outcome is not None:
                return outcome

        await self._leave_cluster(record)
        return MatchOutcome(record_id=record.record_id, decision="unclustered")

    def records_match(self, left: StoredRecord, right: StoredRecord) -> bool:
        """Run the verification chain on two stored records."""
        left_profile = self._build_profile(left)
        right_profile = self._build_profile(right)
        if left_profile is None or right_profile is None:
            return False
        return verify_match(
            left_profile,
            right_profile,
            self._config.dedup,
        ).is_duplicate

    def _is_dedup_eligible(self, record: StoredRecord) -> bool:
        return not (
            record.deleted
            or record.suppressed
            or record.is_component_part
            or not self._config.is_dedup_source(record.source_id)
        )

    def _build_profile(self, record: StoredRecord) -> MatchProfile | None:
        try:
            metadata_record = self._registry.for_record(record)
            return build_match_profile(metadata_record, self._config.dedup)
        except MetadataRecordError as exc:
            logger.warning(
                "Record is unmatchable: %s",
                exc,
                extra={"record_id": record.record_id, "source_id": record.source_id},
            )
            return None

    async def _find_matches(
        self,
        record: StoredRecord,
        profile: MatchProfile,
    ) -> list[CandidateMatch]:
        tried: set[str] = set()
        for rule in CANDIDATE_RULES:
            keys = self._search_keys(record, rule.key_type)
            if not keys:
                continue
            candidates = await self._clusters.find_candidates_by_keys(
                record=record,
                key_type=rule.key_type,
                keys=keys,
                clustered=rule.clustered,
                limit=self._config.dedup.max_candidates,
            )
            matches: list[CandidateMatch] = []
            for candidate in candidates:
                if candidate.record_id in tried:
                    continue
                if not self._config.is_dedup_source(candidate.source_id):
                    continue
                if await self._is_blocked(record, candidate, matches):
                    continue
                tried.add(candidate.record_id)
                candidate_profile = self._build_profile(candidate)
                if candidate_profile is None:
                    continue
                decision = verify_match(profile, candidate_profile, self._config.dedup)
                logger.debug(
                    "Candidate %s for %s: %s (%s)",
                    candidate.record_id,
                    record.record_id,
                    decision.status,
                    decision.reason,
                )
                if not decision.is_duplicate:
                    continue
                matches.append(
                    CandidateMatch(
                        record=candidate,
                        rule=rule,
                        key_overlap=_key_overlap(record, candidate),
                        decision=decision,
                    ),
                )
            if matches:
                logger.debug(
                    "Found %s matches for %s with rule %s",
                    len(matches),
                    record.record_id,
                    rule.name,
                )
                return matches
        return []

    def _search_keys(self, record: StoredRecord, key_type: KeyType) -> frozenset[str]:
        keys = record.keys_of_type(key_type)
        if key_type == "id":
            return keys - self._config.dedup.ignored_ids
        return keys

    async def _is_blocked(
        self,
        record: StoredRecord,
        candidate: StoredRecord,
        matches: list[CandidateMatch],
    ) -> bool:
        if candidate.dedup_id is None:
            return False
        if any(match.record.dedup_id == candidate.dedup_id for match in matches):
            return True
        existing = await self._clusters.find_member_from_source(
            dedup_id=candidate.dedup_id,
            source_id=record.source_id,
            exclude_record_id=record.record_id,
        )
        if existing is not None:
            logger.debug(
                "Candidate %s already deduplicated with %s",
                candidate.record_id,
                existing,
            )
            return True
        return False

    async def _mark_duplicates(
        self,
        record_id: str,
        match: CandidateMatch,
    ) -> MatchOutcome | None:
        record = await self._records.get_record(record_id)
        candidate = await self._records.get_record(match.record.record_id)
        if record is None or record.deleted or record.suppressed:
            logger.warning(
                "Record %s was deleted or suppressed in the meantime",
                record_id,
            )
            return None
        if (
            candidate is None
            or candidate.deleted
            or candidate.suppressed
            or candidate.is_component_part
        ):
            logger.warning(
                "Candidate %s was deleted or suppressed in the meantime",
                match.record.record_id,
            )
            return None

        if candidate.dedup_id is not None and candidate.dedup_id == record.dedup_id:
            _ = await self._records.set_update_needed(
                record_id=record.record_id,
                update_needed=False,
            )
            return self._outcome(record, candidate, match, "joined", record.dedup_id)

        if candidate.dedup_id is not None:
            await self._leave_previous_cluster(record)
            joined = await self._clusters.add_member(
                dedup_id=candidate.dedup_id,
                record_id=record.record_id,
            )
            if joined:
                return self._outcome(
                    record,
                    candidate,
                    match,
                    "joined",
                    candidate.dedup_id,
                )
            dedup = await self._clusters.create_cluster(
                [record.record_id, candidate.record_id],
            )
            _ = await self._clusters.remove_member(
                dedup_id=candidate.dedup_id,
                record_id=candidate.record_id,
            )
            return self._outcome(record, candidate, match, "created", dedup.dedup_id)

        if record.dedup_id is not None:
            joined = await self._clusters.add_member(
                dedup_id=record.dedup_id,
                record_id=candidate.record_id,
            )
            if joined:
                _ = await self._records.set_update_needed(
                    record_id=record.record_id,
                    update_needed=False,
                )
                return self._outcome(record, candidate, match, "joined", record.dedup_id)
            await self._leave_previous_cluster(record)

        dedup = await self._clusters.create_cluster(
            [record.record_id, candidate.record_id],
        )
        return self._outcome(record, candidate, match, "created", dedup.dedup_id)

    async def _leave_previous_cluster(self, record: StoredRecord) -> None:
        if record.dedup_id is None:
            return
        _ = await self._clusters.unlink_record(
            record_id=record.record_id,
            dedup_id=record.dedup_id,
            update_needed=False,
        )
        _ = await self._clusters.remove_member(
            dedup_id=record.dedup_id,
            record_id=record.record_id,
        )

    async def _leave_cluster(self, record: StoredRecord) -> None:
        if record.dedup_id is not None:
            await self._leave_previous_cluster(record)
            return
        _ = await self._records.set_update_needed(
            record_id=record.record_id,
            update_needed=False,
        )

    def _outcome(
        self,
        record: StoredRecord,
        candidate: StoredRecord,
        match: CandidateMatch,
        decision: OutcomeDecision,
        dedup_id: str | None,
    ) -> MatchOutcome:
        logger.info(
            "Marked %s as duplicate with %s in dedup record %s",
            record.record_id,
            candidate.record_id,
            dedup_id,
            extra={"rule": match.rule.name, "reason": match.decision.reason},
        )
        return MatchOutcome(
            record_id=record.record_id,
            decision=decision,
            dedup_id=dedup_id,
            matched_record_id=candidate.record_id,
            rule=match.rule.name,
            reason=match.decision.reason,
        )


def _key_overlap(record: StoredRecord, candidate: StoredRecord) -> int:
    return sum(
        len(record.keys_of_type(key_type) & candidate.keys_of_type(key_type))
        for key_type in KEY_TYPES
    )
