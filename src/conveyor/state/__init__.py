from conveyor.state.backlog import (
    Attachment,
    Backlog,
    BacklogStore,
    ConveyorStateError,
    TaskRecord,
)
from conveyor.state.git import CommitResult, GitCommitter, commit_message
from conveyor.state.progress import ProgressLog

__all__ = [
    "Attachment",
    "Backlog",
    "BacklogStore",
    "CommitResult",
    "ConveyorStateError",
    "GitCommitter",
    "ProgressLog",
    "TaskRecord",
    "commit_message",
]
