import json
import os
import subprocess
from pathlib import Path

import pytest

from conveyor.state import (
    Attachment,
    Backlog,
    BacklogStore,
    ConveyorStateError,
    GitCommitter,
    ProgressLog,
    TaskRecord,
    commit_message,
)


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def test_missing_backlog_loads_as_absent(tmp_path: Path) -> None:
    backlog = BacklogStore(tmp_path / "prd.json").load()

    assert backlog.exists is False
    assert len(backlog) == 0
    assert backlog.next_pending() is None


def test_blank_backlog_loads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "prd.json"
    path.write_text("  \n", encoding="utf-8")

    backlog = BacklogStore(path).load()

    assert backlog.exists is True
    assert len(backlog) == 0


@pytest.mark.parametrize("content", ["{not json", '{"id": 0}', '[{"id": "zero", "title": "x"}]'])
def test_malformed_backlog_raises(tmp_path: Path, content: str) -> None:
    path = tmp_path / "prd.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConveyorStateError):
        BacklogStore(path).load()


def test_backlog_add_assigns_next_id_and_defaults() -> None:
    backlog = Backlog(tasks=[TaskRecord(id=4, title="Existing")])

    task = backlog.add("  New task  ")

    assert task.id == 5
    assert task.title == "New task"
    assert task.description == "No description"
    assert task.is_done is False
    with pytest.raises(ConveyorStateError, match="title is required"):
        backlog.add("   ")


def test_next_pending_follows_backlog_order() -> None:
    backlog = Backlog(
        tasks=[
            TaskRecord(id=3, title="C", is_done=True),
            TaskRecord(id=1, title="A"),
            TaskRecord(id=2, title="B"),
        ]
    )

    pending = backlog.next_pending()

    assert pending is not None
    assert pending.id == 1
    assert [task.id for task in backlog] == [3, 1, 2]


def test_backlog_roundtrip_preserves_unknown_fields(tmp_path: Path) -> None:
    path = tmp_path / "state" / "prd.json"
    path.parent.mkdir()
    path.write_text(
        json.dumps(
            [
                {
                    "id": 0,
                    "title": "A",
                    "description": "first",
                    "isDone": False,
                    "priority": "high",
                    "attachments": [{"type": "image", "relativePath": "docs/ui.png"}],
                }
            ]
        ),
        encoding="utf-8",
    )
    store = BacklogStore(path)

    store.mark_done(0)
    payload = json.loads(path.read_text(encoding="utf-8"))

    assert payload[0]["isDone"] is True
    assert payload[0]["priority"] == "high"
    assert payload[0]["attachments"] == [
        {"type": "image", "relativePath": "docs/ui.png", "displayName": "ui.png"}
    ]
    assert "plan" not in payload[0]


def test_store_set_plan_and_update(tmp_path: Path) -> None:
    store = BacklogStore(tmp_path / "prd.json")
    backlog = store.load()
    backlog.add("A", "desc", [Attachment(type="file", relative_path="a.txt", display_name="a.txt")])
    store.save(backlog)

    store.set_plan(0, "1. do it")
    reloaded = store.load()
    reloaded.update(0, title="A2", description="")
    store.save(reloaded)
    task = store.load().get(0)

    assert task is not None
    assert task.plan == "1. do it"
    assert task.title == "A2"
    assert task.description == "No description"
    assert task.attachments[0].relative_path == "a.txt"


def test_mark_done_on_unknown_task_raises(tmp_path: Path) -> None:
    store = BacklogStore(tmp_path / "prd.json")
    store.save(Backlog())

    with pytest.raises(ConveyorStateError, match="Task not found"):
        store.mark_done(9)


def test_progress_log_append_and_clear(tmp_path: Path) -> None:
    progress = ProgressLog(tmp_path / "nested" / "progress.txt")

    assert progress.read() == ""
    progress.append("[0] A\nsummary one")
    progress.append("[1] B\nsummary two")
    content = progress.read()

    assert content.count("\n---\n[") == 2
    assert content.index("summary one") < content.index("summary two")

    progress.clear()
    assert progress.exists()
    assert progress.read() == ""


def test_commit_message_uses_id_and_title() -> None:
    assert commit_message(TaskRecord(id=0, title="A")) == "[0] A"


def test_git_commit_all_and_log(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    (tmp_path / "feature.txt").write_text("hello\n", encoding="utf-8")
    git = GitCommitter(tmp_path)

    first = git.commit_all("[0] A")
    second = git.commit_all("[1] B")

    assert git.is_repo()
    assert first.success and first.committed
    assert first.message == "Committed: [0] A"
    assert second.success and not second.committed
    assert second.message == "No changes to commit"
    assert "[0] A" in git.log(5)


def test_git_log_outside_repository_is_empty(tmp_path: Path) -> None:
    env = {**os.environ, "GIT_CEILING_DIRECTORIES": str(tmp_path.parent)}
    git = GitCommitter(tmp_path, env=env)

    assert git.log() == ""


def test_git_failure_is_reported_not_raised(tmp_path: Path) -> None:
    git = GitCommitter(tmp_path, git_binary=str(tmp_path / "no-such-git"))

    result = git.commit_all("[0] A")

    assert result.success is False
    assert result.committed is False
    assert "failed" in result.message
