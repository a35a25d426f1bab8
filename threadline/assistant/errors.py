"""Failures raised while relaying one inbound message to the assistant."""


class ThreadlineError(Exception):
    """Base class; every subclass is caught and logged at the dispatcher boundary."""

    stage = "unknown"

    def __init__(self, message: str, *, contact_id: str = "", thread_id: str = ""):
        super().__init__(message)
        self.contact_id = contact_id
        self.thread_id = thread_id


class UploadError(ThreadlineError):
    """Attachment could not be staged locally or uploaded."""

    stage = "upload"


class ThreadCreationError(ThreadlineError):
    """Backend refused to create a thread for a new contact."""

    stage = "thread_create"


class MessageAppendError(ThreadlineError):
    """Backend refused to append a message to an existing thread."""

    stage = "message_append"


class RunSubmissionError(ThreadlineError):
    """The first run of a message could not be created."""

    stage = "run_submit"


class PollingError(ThreadlineError):
    """Run status check failed; terminal for the current call."""

    stage = "poll"


class PersistenceError(ThreadlineError):
    """Thread registry could not be written to durable storage."""

    stage = "persist"
