"""Propagate component part changes to their host records."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .cluster_store import source_id_from_record_id

if TYPE_CHECKING:
    from collections.abc import Callable

    from recman.config import RecmanConfig
    from recman.storage import RecordsRepository, StoredRecord

logger = logging.getLogger(__name__)


class UpdatePropagator:
    """Flag host records whose linking ids a component part points at.

    Hosts in dedup-enabled sources get `update_needed` so the next dedup
    run re-evaluates them; hosts elsewhere only have `updated` bumped so
    downstream indexers rebuild them.
    """

    _records: RecordsRepository
    _config: RecmanConfig
    _now_provider: Callable[[], datetime]

    def __init__(
        self,
        *,
        records_repository: RecordsRepository,
        config: RecmanConfig,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Create propagator over the records repository."""
        self._records = records_repository
        self._config = config
        self._now_provider = now_provider or _utc_now

    async def propagate(self, component: StoredRecord) -> int:
        """Flag the hosts of `component` and return how many were affected."""
        if not component.host_record_ids:
            return 0
        source = self._config.source(component.source_id)
        host_source_ids = (
            source.host_sources() if source is not None else (component.source_id,)
        )
        host_ids = await self._records.find_host_record_ids(
            source_ids=host_source_ids,
            linking_ids=component.host_record_ids,
        )
        if not host_ids:
            logger.debug("No host records found for %s", component.record_id)
            return 0

        flagged = [
            host_id
            for host_id in host_ids
            if self._config.is_dedup_source(source_id_from_record_id(host_id))
        ]
        touched = [host_id for host_id in host_ids if host_id not in flagged]
        count = 0
        if flagged:
            count += await self._records.mark_update_needed(flagged)
        if touched:
            count += await self._records.touch_records(
                touched,
                now=self._now_provider(),
            )
        logger.debug(
            "Propagated change of %s to %s host records",
            component.record_id,
            count,
        )
        return count


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)
