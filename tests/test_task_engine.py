"""Tests for the task engine (task_engine/engine.py)."""

from __future__ import annotations

import json
import threading
import uuid
from pathlib import Path

import pytest

from agent_taskboard.errors import (
    DependencyCycleError,
    NotFoundError,
    StoreIOError,
    ValidationError,
)
from agent_taskboard.projects import ProjectSession
from agent_taskboard.task_engine import TaskEngine, TaskInput, TaskStatus
from agent_taskboard.task_engine.model import RelatedFile, RelatedFileType


def _names(tasks) -> list[str]:
    return [t.name for t in tasks]


def _seed(engine: TaskEngine, *specs: dict, project: str = "alpha") -> dict[str, str]:
    result = engine.batch_create_or_update_tasks(list(specs), "append", project)
    return {t.name: t.id for t in result.created}


def _complete(engine: TaskEngine, task_id: str, project: str = "alpha") -> None:
    engine.start_task(task_id, project)
    engine.verify_task(task_id, 95, "done", project)


# ---------------------------------------------------------------------------
# Batch modes
# ---------------------------------------------------------------------------

class TestBatchModes:
    def test_append_creates_tasks(self, engine: TaskEngine) -> None:
        result = engine.batch_create_or_update_tasks(
            [{"name": "A", "description": "first"}, TaskInput(name="B")],
            "append",
            "alpha",
            global_analysis_result="shared analysis",
        )
        assert _names(result.created) == ["A", "B"]
        stored = engine.get_all_tasks("alpha")
        assert _names(stored) == ["A", "B"]
        assert all(t.analysis_result == "shared analysis" for t in stored)

    def test_append_rejects_existing_name(self, engine: TaskEngine) -> None:
        _seed(engine, {"name": "A"})
        with pytest.raises(ValidationError) as excinfo:
            engine.batch_create_or_update_tasks([{"name": "B"}, {"name": "A"}], "append", "alpha")
        assert excinfo.value.field == "name"
        assert _names(engine.get_all_tasks("alpha")) == ["A"]

    def test_duplicate_names_within_batch(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError):
            engine.batch_create_or_update_tasks([{"name": "A"}, {"name": "A"}], "append", "alpha")
        assert engine.get_all_tasks("alpha") == []

    def test_overwrite_keeps_only_completed(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B"})
        _complete(engine, ids["A"])
        result = engine.batch_create_or_update_tasks([{"name": "C"}], "overwrite", "alpha")
        assert sorted(_names(result.tasks)) == ["A", "C"]
        stored = {t.name: t for t in engine.get_all_tasks("alpha")}
        assert stored["A"].id == ids["A"]
        assert stored["A"].status == TaskStatus.COMPLETED

    def test_overwrite_rejects_name_of_retained_task(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        _complete(engine, ids["A"])
        with pytest.raises(ValidationError):
            engine.batch_create_or_update_tasks([{"name": "A"}], "overwrite", "alpha")

    def test_overwrite_keeps_edges_between_retained_tasks(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B", "dependencies": ["A"]})
        _complete(engine, ids["A"])
        _complete(engine, ids["B"])
        engine.batch_create_or_update_tasks([{"name": "C", "dependencies": ["B"]}], "append", "alpha")
        result = engine.batch_create_or_update_tasks([{"name": "D"}], "overwrite", "alpha")
        assert sorted(_names(result.tasks)) == ["A", "B", "D"]
        stored = {t.name: t for t in engine.get_all_tasks("alpha")}
        assert stored["B"].dependencies == [ids["A"]]

    def test_selective_updates_in_place(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B", "description": "old"})
        _complete(engine, ids["A"])
        result = engine.batch_create_or_update_tasks(
            [{"name": "B", "description": "new", "notes": "renamed fields"}, {"name": "E"}],
            "selective",
            "alpha",
        )
        assert _names(result.updated) == ["B"]
        assert _names(result.created) == ["E"]
        stored = {t.name: t for t in engine.get_all_tasks("alpha")}
        assert set(stored) == {"A", "B", "E"}
        assert stored["B"].id == ids["B"]
        assert stored["B"].description == "new"
        assert stored["B"].notes == "renamed fields"
        assert stored["A"].status == TaskStatus.COMPLETED

    def test_clear_all_tasks_mode_backs_up_then_replaces(self, engine: TaskEngine) -> None:
        _seed(engine, {"name": "A"}, {"name": "B"})
        result = engine.batch_create_or_update_tasks([{"name": "Z"}], "clearAllTasks", "alpha")
        assert _names(engine.get_all_tasks("alpha")) == ["Z"]
        assert result.backup_path is not None
        saved = json.loads(result.backup_path.read_text(encoding="utf-8"))
        assert [t["name"] for t in saved["tasks"]] == ["A", "B"]

    def test_rejected_clear_all_tasks_batch_writes_no_backup(self, engine: TaskEngine) -> None:
        _seed(engine, {"name": "A"})
        with pytest.raises(ValidationError):
            engine.batch_create_or_update_tasks(
                [{"name": "Z", "dependencies": ["missing"]}], "clearAllTasks", "alpha"
            )
        assert _names(engine.get_all_tasks("alpha")) == ["A"]
        assert engine.list_backups("alpha") == []

    def test_unknown_mode(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError):
            engine.batch_create_or_update_tasks([{"name": "A"}], "merge", "alpha")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

class TestDependencies:
    def test_names_and_ids_normalized_to_ids(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        result = engine.batch_create_or_update_tasks(
            [{"name": "B", "dependencies": ["A"]}, {"name": "C", "dependencies": [ids["A"], "B"]}],
            "append",
            "alpha",
        )
        by_name = {t.name: t for t in result.tasks}
        assert by_name["B"].dependencies == [ids["A"]]
        assert by_name["C"].dependencies == [ids["A"], by_name["B"].id]

    def test_unresolvable_reference_fails_whole_batch(self, engine: TaskEngine) -> None:
        with pytest.raises(ValidationError) as excinfo:
            engine.batch_create_or_update_tasks(
                [{"name": "A"}, {"name": "B", "dependencies": ["ghost"]}], "append", "alpha"
            )
        assert excinfo.value.current == "ghost"
        assert engine.get_all_tasks("alpha") == []

    def test_cycle_in_batch_rejected(self, engine: TaskEngine) -> None:
        with pytest.raises(DependencyCycleError):
            engine.batch_create_or_update_tasks(
                [{"name": "A", "dependencies": ["B"]}, {"name": "B", "dependencies": ["A"]}],
                "append",
                "alpha",
            )
        assert engine.get_all_tasks("alpha") == []

    def test_self_dependency_rejected(self, engine: TaskEngine) -> None:
        with pytest.raises(DependencyCycleError):
            engine.batch_create_or_update_tasks([{"name": "A", "dependencies": ["A"]}], "append", "alpha")

    def test_cycle_via_content_update_rejected(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B", "dependencies": ["A"]})
        with pytest.raises(DependencyCycleError):
            engine.update_task_content(ids["A"], "alpha", dependencies=["B"])
        assert engine.get_task_by_id(ids["A"], "alpha").dependencies == []


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_start_blocked_by_incomplete_dependency(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B", "dependencies": ["A"]})
        with pytest.raises(ValidationError) as excinfo:
            engine.start_task(ids["B"], "alpha")
        assert "'A'" in excinfo.value.message
        assert excinfo.value.current == [ids["A"]]
        assert engine.get_task_by_id(ids["B"], "alpha").status == TaskStatus.PENDING

    def test_update_status_applies_same_guard(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B", "dependencies": ["A"]})
        with pytest.raises(ValidationError):
            engine.update_task_status(ids["B"], "in_progress", "alpha")
        _complete(engine, ids["A"])
        task = engine.update_task_status(ids["B"], TaskStatus.IN_PROGRESS, "alpha")
        assert task.status == TaskStatus.IN_PROGRESS

    def test_pending_cannot_jump_to_completed(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        with pytest.raises(ValidationError):
            engine.update_task_status(ids["A"], "completed", "alpha")

    def test_completed_is_final(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        _complete(engine, ids["A"])
        with pytest.raises(ValidationError):
            engine.update_task_status(ids["A"], "in_progress", "alpha")

    def test_can_execute_task(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B", "dependencies": ["A"]})
        assert engine.can_execute_task(ids["A"], "alpha") == (True, [])
        assert engine.can_execute_task(ids["B"], "alpha") == (False, [ids["A"]])

    def test_start_is_idempotent(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        first = engine.start_task(ids["A"], "alpha")
        again = engine.start_task(ids["A"], "alpha")
        assert first.status == again.status == TaskStatus.IN_PROGRESS


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class TestVerification:
    def test_passing_score_completes(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        engine.start_task(ids["A"], "alpha")
        result = engine.verify_task(ids["A"], 80, "all criteria met", "alpha")
        assert result.completed
        stored = engine.get_task_by_id(ids["A"], "alpha")
        assert stored.status == TaskStatus.COMPLETED
        assert stored.summary == "all criteria met"
        assert stored.completed_at is not None

    def test_low_score_keeps_in_progress_with_feedback(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        engine.start_task(ids["A"], "alpha")
        result = engine.verify_task(ids["A"], 79, "missing error handling", "alpha")
        assert not result.completed
        stored = engine.get_task_by_id(ids["A"], "alpha")
        assert stored.status == TaskStatus.IN_PROGRESS
        assert stored.summary == "missing error handling"

    def test_must_be_in_progress(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        with pytest.raises(ValidationError):
            engine.verify_task(ids["A"], 90, "ok", "alpha")

    @pytest.mark.parametrize("score", [-1, 101, 85.5, True])
    def test_score_range(self, engine: TaskEngine, score) -> None:
        ids = _seed(engine, {"name": "A"})
        engine.start_task(ids["A"], "alpha")
        with pytest.raises(ValidationError):
            engine.verify_task(ids["A"], score, "ok", "alpha")


# ---------------------------------------------------------------------------
# Single-task mutators and reads
# ---------------------------------------------------------------------------

class TestMutators:
    def test_unknown_and_invalid_ids(self, engine: TaskEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.get_task_by_id(str(uuid.uuid4()), "alpha")
        with pytest.raises(ValidationError):
            engine.get_task_by_id("not-a-uuid", "alpha")
        with pytest.raises(NotFoundError):
            engine.update_task_summary(str(uuid.uuid4()), "x", "alpha")

    def test_update_summary(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        assert engine.update_task_summary(ids["A"], "progress", "alpha").summary == "progress"

    def test_update_content_and_rename(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B"})
        task = engine.update_task_content(ids["A"], "alpha", name="A2", notes="n")
        assert task.name == "A2" and task.notes == "n"
        with pytest.raises(ValidationError):
            engine.update_task_content(ids["A"], "alpha", name="B")

    def test_completed_task_only_accepts_related_files(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"})
        _complete(engine, ids["A"])
        with pytest.raises(ValidationError):
            engine.update_task_content(ids["A"], "alpha", description="late edit")
        files = [RelatedFile("src/a.py", RelatedFileType.CREATE, "new module", 1, 10)]
        task = engine.update_task_content(ids["A"], "alpha", related_files=files)
        assert task.related_files == files

    def test_delete_rules(self, engine: TaskEngine) -> None:
        ids = _seed(engine, {"name": "A"}, {"name": "B", "dependencies": ["A"]}, {"name": "C"})
        with pytest.raises(ValidationError):
            engine.delete_task(ids["A"], "alpha")
        engine.delete_task(ids["C"], "alpha")
        assert sorted(_names(engine.get_all_tasks("alpha"))) == ["A", "B"]
        engine.delete_task(ids["B"], "alpha")
        _complete(engine, ids["A"])
        with pytest.raises(ValidationError):
            engine.delete_task(ids["A"], "alpha")

    def test_list_and_query(self, engine: TaskEngine) -> None:
        ids = _seed(
            engine,
            {"name": "Login page", "description": "OAuth form"},
            {"name": "Logout", "description": "clear session"},
            {"name": "Docs", "description": "OAuth guide"},
        )
        engine.start_task(ids["Docs"], "alpha")
        assert _names(engine.list_tasks("alpha", status="in_progress")) == ["Docs"]

        found = engine.query_tasks("alpha", "oauth")
        assert found["total"] == 2
        found = engine.query_tasks("alpha", "oauth form")
        assert _names(found["tasks"]) == ["Login page"]
        paged = engine.query_tasks("alpha", "o", page=2, page_size=2)
        assert paged["totalPages"] == 2 and len(paged["tasks"]) == 1
        by_id = engine.query_tasks("alpha", ids["Logout"], is_id=True)
        assert _names(by_id["tasks"]) == ["Logout"]


# ---------------------------------------------------------------------------
# Clearing and backups
# ---------------------------------------------------------------------------

class TestClear:
    def test_clear_backs_up_then_truncates(self, engine: TaskEngine) -> None:
        _seed(engine, {"name": "A"}, {"name": "B"})
        outcome = engine.clear_all_tasks("alpha")
        assert outcome["cleared"] == 2
        assert engine.get_all_tasks("alpha") == []
        backups = engine.list_backups("alpha")
        assert len(backups) == 1
        assert str(backups[0]) == outcome["backupFile"]
        saved = json.loads(backups[0].read_text(encoding="utf-8"))
        assert [t["name"] for t in saved["tasks"]] == ["A", "B"]

    def test_clear_empty_store_writes_no_backup(self, engine: TaskEngine) -> None:
        assert engine.clear_all_tasks("alpha") == {"cleared": 0, "backupFile": None}
        assert engine.list_backups("alpha") == []

    def test_backup_failure_leaves_store_intact(self, engine: TaskEngine, session: ProjectSession) -> None:
        _seed(engine, {"name": "A"})
        memory = session.resolver.resolve("alpha").memory_dir
        memory.parent.mkdir(parents=True, exist_ok=True)
        memory.write_text("not a directory", encoding="utf-8")
        with pytest.raises(StoreIOError):
            engine.clear_all_tasks("alpha")
        assert _names(engine.get_all_tasks("alpha")) == ["A"]


# ---------------------------------------------------------------------------
# Isolation and serialization
# ---------------------------------------------------------------------------

class TestConcurrency:
    def test_projects_are_isolated(self, engine: TaskEngine, session: ProjectSession) -> None:
        _seed(engine, {"name": "A"}, project="alpha")
        _seed(engine, {"name": "B"}, project="beta")
        assert _names(engine.get_all_tasks("alpha")) == ["A"]
        assert _names(engine.get_all_tasks("beta")) == ["B"]
        alpha = session.resolver.resolve("alpha").tasks_file_path
        beta = session.resolver.resolve("beta").tasks_file_path
        assert alpha != beta and alpha.exists() and beta.exists()

    def test_concurrent_appends_lose_nothing(self, engine: TaskEngine) -> None:
        n = 12
        barrier = threading.Barrier(n)
        errors: list[Exception] = []

        def work(i: int) -> None:
            barrier.wait()
            try:
                engine.batch_create_or_update_tasks([{"name": f"task-{i}"}], "append", "alpha")
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=work, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)
        assert errors == []
        assert sorted(_names(engine.get_all_tasks("alpha"))) == sorted(f"task-{i}" for i in range(n))

    def test_concurrent_projects_in_parallel(self, engine: TaskEngine, session: ProjectSession) -> None:
        barrier = threading.Barrier(2)

        def work(project: str) -> None:
            barrier.wait()
            for i in range(5):
                with session.bind(project):
                    engine.batch_create_or_update_tasks([{"name": f"{project}-{i}"}], "append", project)

        threads = [threading.Thread(target=work, args=(p,)) for p in ("alpha", "beta")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)
        assert all(n.startswith("alpha-") for n in _names(engine.get_all_tasks("alpha")))
        assert all(n.startswith("beta-") for n in _names(engine.get_all_tasks("beta")))
        assert len(engine.get_all_tasks("beta")) == 5


def test_store_file_lives_under_project_root(engine: TaskEngine, roots: dict[str, Path]) -> None:
    _seed(engine, {"name": "A"})
    assert (roots["alpha"].resolve() / "data" / "tasks.json").exists()
