"""Persistence collaborators used by the loop and its hooks."""

from turnloop.store.artifacts import ArtifactStore
from turnloop.store.file_changes import FileChange, FileChangeTracker
from turnloop.store.message_store import MessageStore
from turnloop.store.task_settings import TaskSettingsResolver

__all__ = [
    "ArtifactStore",
    "FileChange",
    "FileChangeTracker",
    "MessageStore",
    "TaskSettingsResolver",
]
