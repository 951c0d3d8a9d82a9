"""Exception hierarchy for ingestion and job processing.

`retryable` tells the job runner whether a failed attempt may be requeued;
`code` is the machine-readable reason surfaced to sync callers.
"""


class PipelineError(Exception):
    """Base class for pipeline failures."""

    code = "pipeline_error"
    retryable = True


class ConnectorError(PipelineError):
    """Provider unreachable or returned an unexpected error."""

    code = "connector_error"


class NotConnectedError(ConnectorError):
    """User has no usable authorization for the provider.

    Retrying cannot help; the user must (re)connect the account.
    """

    code = "not_connected"
    retryable = False


class SyncTimeoutError(ConnectorError):
    """A sync run ran longer than SYNC_TIMEOUT_SECONDS."""


class StageNotReady(PipelineError):
    """The predecessor stage of a batch has not finished yet."""

    code = "stage_not_ready"


class UpstreamStageError(PipelineError):
    """The predecessor stage of a batch failed or was reverted."""

    code = "upstream_failed"
    retryable = False


class UnknownJobKind(PipelineError):
    code = "unknown_job_kind"
    retryable = False


class InvalidJobPayload(PipelineError):
    code = "invalid_payload"
    retryable = False
