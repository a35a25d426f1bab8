"""Thread lifecycle and run-completion core."""

from threadline.assistant.composer import MessageContent, compose
from threadline.assistant.dispatcher import Dispatcher
from threadline.assistant.extractor import extract_latest
from threadline.assistant.registry import JsonThreadStore, ThreadRegistry
from threadline.assistant.stager import AttachmentStager
from threadline.assistant.watcher import RunOutcome, RunWatcher

__all__ = [
    "AttachmentStager",
    "Dispatcher",
    "JsonThreadStore",
    "MessageContent",
    "RunOutcome",
    "RunWatcher",
    "ThreadRegistry",
    "compose",
    "extract_latest",
]
