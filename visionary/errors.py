"""Error taxonomy for the visualization pipeline.

Every error carries the HTTP status the API layer answers with. Side-channel
components (history recorder, metadata store, access-URL resolver) never let
these escape; the orchestrator raises them only for conditions the caller has
to see.
"""


class VisionaryError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(VisionaryError):
    """Missing or invalid request fields. Reported to the caller, never retried."""

    status_code = 400


class SubmissionFailed(VisionaryError):
    """The inference API rejected a job or returned no job id."""

    status_code = 502


class CancellationFailed(VisionaryError):
    """The inference API refused or failed to cancel a job."""

    status_code = 502


class ExtractionFailed(VisionaryError):
    """A job succeeded but no media URL could be pulled out of its output."""

    status_code = 422


class PersistenceFailed(VisionaryError):
    """Fetching or uploading a result to permanent storage failed."""

    status_code = 500


class PollingTransportError(VisionaryError):
    """Network failure while asking the inference API for a job's status."""

    status_code = 502


class StuckJob(VisionaryError):
    """A job stayed in ``starting`` past the threshold and could not be restarted.

    Soft condition: logged and surfaced as a warning on the poll response,
    never as a failed job.
    """


class EnhancementFailed(VisionaryError):
    """The LLM text-enhancement endpoint failed."""

    status_code = 502
