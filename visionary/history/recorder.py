"""History recorder: the creation_history table as a best-effort side channel.

The poll response, not this table, drives the in-flight state machine, so
every method here logs failures and returns instead of raising.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from visionary.config import Settings
from visionary.db.supabase_client import run_blocking
from visionary.history.models import HistoryRecord, prediction_column
from visionary.jobs.models import JobKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryKey:
    """Addresses a history row by id, or by prediction id plus job kind."""
    id: Optional[str] = None
    prediction_id: Optional[str] = None
    kind: JobKind = JobKind.BASE_GENERATION

    def __post_init__(self):
        if not self.id and not self.prediction_id:
            raise ValueError("Either id or prediction_id must be provided")

    @property
    def column(self) -> str:
        return "id" if self.id else prediction_column(self.kind)

    @property
    def value(self) -> str:
        return self.id or self.prediction_id

    def __str__(self) -> str:
        return f"{self.column}={self.value}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HistoryRecorder:
    def __init__(self, supabase, settings: Settings):
        self._supabase = supabase
        self._table = settings.history_table

    def _query(self):
        return self._supabase.table(self._table)

    def _clean(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Keep declared columns only."""
        columns = HistoryRecord.columns()
        unknown = set(fields) - columns
        if unknown:
            logger.warning("Dropping undeclared history columns: %s", sorted(unknown))
        return {k: v for k, v in fields.items() if k in columns}

    async def create(self, record: HistoryRecord) -> Optional[HistoryRecord]:
        row = record.to_row()
        row.setdefault("created_at", _now())
        row["updated_at"] = row["created_at"]
        try:
            response = await run_blocking(self._query().insert(row).execute)
            if not response.data:
                return None
            created = HistoryRecord.model_validate(response.data[0])
        except Exception as e:
            logger.error("Failed to create history record for prediction=%s: %s",
                         record.replicate_prediction_id, e)
            return None
        logger.info("Created history record history=%s prediction=%s",
                    created.id, created.replicate_prediction_id)
        return created

    async def upsert(
        self,
        key: HistoryKey,
        fields: Dict[str, Any],
        completed: bool = False,
    ) -> None:
        """Update the row addressed by ``key``. Never raises."""
        try:
            data = self._clean(fields)
            data["updated_at"] = _now()
            if completed:
                data["completed_at"] = data["updated_at"]
            query = self._query().update(data).eq(key.column, key.value)
            await run_blocking(query.execute)
        except Exception as e:
            logger.error("Failed to update history record (%s): %s", key, e)
            return
        logger.info("Updated history record (%s) status=%s", key, fields.get("status"))

    async def get(self, key: HistoryKey) -> Optional[HistoryRecord]:
        try:
            query = self._query().select("*").eq(key.column, key.value).limit(1)
            response = await run_blocking(query.execute)
            if not response.data:
                return None
            return HistoryRecord.model_validate(response.data[0])
        except Exception as e:
            logger.warning("Failed to retrieve history record (%s): %s", key, e)
            return None
