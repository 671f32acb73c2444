class ShelterOpsError(Exception):
    """Base class for errors raised inside the conversational core."""


class UpstreamFailure(ShelterOpsError):
    """A mandatory downstream call (classifier or workflow) did not succeed."""


class UpstreamTimeout(UpstreamFailure):
    """A downstream call exceeded its time budget."""


class UpstreamProtocolError(UpstreamFailure):
    """A downstream call returned a non-success status or an unusable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClassifierError(ShelterOpsError):
    """The language-model classifier failed or its output did not match the schema."""


class ToolExecutionError(ShelterOpsError):
    """A single tool call failed; recorded on that call only."""


class DataStoreError(ShelterOpsError):
    """The business data store rejected or failed a statement."""


class PersistenceError(ShelterOpsError):
    """Conversation context could not be written."""
