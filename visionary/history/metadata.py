"""Per-prediction processing metadata (the stuck-job cancel guard)."""

import logging
from datetime import datetime, timezone
from typing import Optional

from visionary.config import Settings
from visionary.db.supabase_client import run_blocking
from visionary.history.models import ProcessingMetadata

logger = logging.getLogger(__name__)


class ProcessingMetadataStore:
    def __init__(self, supabase, settings: Settings):
        self._supabase = supabase
        self._table = settings.metadata_table

    def _query(self):
        return self._supabase.table(self._table)

    async def get(self, prediction_id: str) -> Optional[ProcessingMetadata]:
        try:
            query = self._query().select("*").eq("prediction_id", prediction_id).limit(1)
            response = await run_blocking(query.execute)
            if not response.data:
                return None
            return ProcessingMetadata.model_validate(response.data[0])
        except Exception as e:
            logger.warning("Failed to retrieve metadata for prediction=%s: %s", prediction_id, e)
            return None

    async def ensure(self, prediction_id: str, history_id: Optional[str]) -> ProcessingMetadata:
        """Return the metadata row, creating it on first sight of the prediction."""
        existing = await self.get(prediction_id)
        if existing is not None:
            return existing
        row = {
            "prediction_id": prediction_id,
            "history_id": history_id,
            "cancellation_attempted": False,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            query = self._query().upsert(row, on_conflict="prediction_id", ignore_duplicates=True)
            await run_blocking(query.execute)
        except Exception as e:
            logger.warning("Failed to create metadata for prediction=%s: %s", prediction_id, e)
        return ProcessingMetadata.model_validate(row)

    async def mark_cancellation_attempted(
        self, prediction_id: str, history_id: Optional[str]
    ) -> bool:
        """Record the cancel attempt. Upserts so a missing row cannot defeat the guard."""
        row = {
            "prediction_id": prediction_id,
            "history_id": history_id,
            "cancellation_attempted": True,
        }
        try:
            query = self._query().upsert(row, on_conflict="prediction_id")
            await run_blocking(query.execute)
        except Exception as e:
            logger.error("Error recording cancellation for prediction=%s: %s", prediction_id, e)
            return False
        return True
