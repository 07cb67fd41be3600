import pytest

from visionary.history.metadata import ProcessingMetadataStore
from visionary.history.models import SCHEMA_VERSION, HistoryRecord
from visionary.history.recorder import HistoryKey, HistoryRecorder
from visionary.jobs.models import JobKind

HISTORY = "creation_history"


@pytest.fixture
def recorder(supabase, settings):
    return HistoryRecorder(supabase, settings)


@pytest.fixture
def metadata(supabase, settings):
    return ProcessingMetadataStore(supabase, settings)


def test_history_key_requires_an_id():
    with pytest.raises(ValueError):
        HistoryKey()
    assert HistoryKey(id="h1").column == "id"
    assert HistoryKey(prediction_id="p1").column == "replicate_prediction_id"
    assert HistoryKey(prediction_id="p1", kind=JobKind.FACE_SWAP).column == "face_swap_prediction_id"


@pytest.mark.asyncio
async def test_create_and_get(recorder):
    created = await recorder.create(HistoryRecord(replicate_prediction_id="p1", media_url="pending"))

    assert created.id == "hist-1"
    by_prediction = await recorder.get(HistoryKey(prediction_id="p1"))
    assert by_prediction.id == "hist-1"
    assert not by_prediction.has_saved_media(JobKind.BASE_GENERATION)


@pytest.mark.asyncio
async def test_upsert_by_face_swap_prediction(recorder, supabase):
    await recorder.create(HistoryRecord(replicate_prediction_id="p1", face_swap_prediction_id="fs1"))

    await recorder.upsert(
        HistoryKey(prediction_id="fs1", kind=JobKind.FACE_SWAP),
        {"status": "completed", "media_url": "https://x/final.png", "face_swap_saved_to_storage": True},
        completed=True,
    )

    record = await recorder.get(HistoryKey(id="hist-1"))
    assert record.status == "completed"
    assert record.completed_at is not None
    assert record.has_saved_media(JobKind.FACE_SWAP)
    assert not record.has_saved_media(JobKind.BASE_GENERATION)


@pytest.mark.asyncio
async def test_upsert_drops_undeclared_columns(recorder, supabase):
    await recorder.create(HistoryRecord(replicate_prediction_id="p1"))

    await recorder.upsert(HistoryKey(id="hist-1"), {"status": "processing", "bogus": 1})

    assert "bogus" not in supabase.rows(HISTORY)[0]
    assert supabase.get(HISTORY).updates()[-1]["status"] == "processing"


@pytest.mark.asyncio
async def test_recorder_swallows_database_errors(recorder, supabase):
    supabase.get(HISTORY).fail = True

    assert await recorder.create(HistoryRecord(replicate_prediction_id="p1")) is None
    assert await recorder.get(HistoryKey(id="hist-1")) is None
    await recorder.upsert(HistoryKey(id="hist-1"), {"status": "failed"})


def test_pending_media_is_not_saved():
    record = HistoryRecord(result_saved_to_storage=True, media_url="pending")
    assert not record.has_saved_media(JobKind.BASE_GENERATION)


@pytest.mark.asyncio
async def test_metadata_guard(metadata, supabase):
    first = await metadata.ensure("p1", "hist-1")
    assert first.cancellation_attempted is False

    assert await metadata.mark_cancellation_attempted("p1", "hist-1") is True
    again = await metadata.ensure("p1", "hist-1")

    assert again.cancellation_attempted is True
    assert len(supabase.rows("processing_metadata")) == 1


@pytest.mark.asyncio
async def test_mark_without_existing_row_still_records(metadata):
    assert await metadata.mark_cancellation_attempted("p2", None) is True
    assert (await metadata.get("p2")).cancellation_attempted is True


@pytest.mark.asyncio
async def test_null_columns_read_back_as_defaults(recorder, supabase):
    supabase.rows(HISTORY).append({
        "id": "hist-9",
        "replicate_prediction_id": "p9",
        "status": None,
        "progress": None,
        "result_saved_to_storage": None,
        "face_swap_saved_to_storage": None,
        "face_swap_restarted": None,
        "schema_version": None,
    })

    record = await recorder.get(HistoryKey(id="hist-9"))

    assert record.status == "processing"
    assert record.progress == 0
    assert record.result_saved_to_storage is False
    assert record.schema_version == SCHEMA_VERSION


@pytest.mark.asyncio
async def test_unreadable_row_is_treated_as_missing(recorder, metadata, supabase):
    supabase.rows(HISTORY).append({"id": "hist-9", "progress": "halfway"})
    supabase.rows("processing_metadata").append({"prediction_id": None})

    assert await recorder.get(HistoryKey(id="hist-9")) is None
    assert await metadata.get(None) is None


@pytest.mark.asyncio
async def test_null_cancellation_flag_reads_as_not_attempted(metadata, supabase):
    supabase.rows("processing_metadata").append({"prediction_id": "p3", "cancellation_attempted": None})

    assert (await metadata.get("p3")).cancellation_attempted is False
