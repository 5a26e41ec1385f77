"""
Unit tests for the sync engine: commits, pull requests, links and task status.
"""

import pytest
from sqlalchemy import func
from sqlmodel import select

from tasklink.db.models.commit import Commit
from tasklink.db.models.pull_request import PullRequest, PullRequestStatus
from tasklink.db.models.task_link import LinkType, TaskLink
from tasklink.services.github.exceptions import (
    ConnectionUnavailableError,
    RecordNotFoundError,
)
from tasklink.services.github.sync_engine import pull_request_status
from tasklink.services.tasks import TaskStatus
from tests.conftest import make_commit, make_pull_request


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.exec(select(func.count()).select_from(model))).one()


async def links_for(session_factory, **where):
    async with session_factory() as session:
        statement = select(TaskLink)
        for column, value in where.items():
            statement = statement.where(getattr(TaskLink, column) == value)
        return (await session.exec(statement.order_by(TaskLink.id))).all()


class TestIngestCommit:
    """Tests for ingest_commit."""

    async def test_resolves_completes_task(
        self, sync_engine, tasks, publisher, connection, session_factory
    ):
        tasks.add(42, TaskStatus.IN_PROGRESS)

        result = await sync_engine.ingest_commit(
            connection.id, make_commit(message="Resolves #42"), "main"
        )

        assert result.commit.branch_name == "main"
        assert [link.link_type for link in result.links_created] == ["RESOLVES"]
        assert result.tasks_completed == [42]
        assert tasks.completed == [42]
        assert publisher.types() == ["TASK_LINKED", "TASK_COMPLETED"]

    async def test_same_sha_twice_is_idempotent(
        self, sync_engine, tasks, connection, session_factory
    ):
        tasks.add(12)
        payload = make_commit(message="fixes #12 and also #12")

        first = await sync_engine.ingest_commit(connection.id, payload, "main")
        second = await sync_engine.ingest_commit(connection.id, payload, "main")

        assert first.commit.id == second.commit.id
        assert await count(session_factory, Commit) == 1
        links = await links_for(session_factory, commit_id=first.commit.id)
        assert [(link.task_id, link.link_type) for link in links] == [(12, "FIXES")]
        assert second.links_created == []
        # Already DONE after the first delivery
        assert tasks.completed == [12]

    async def test_redelivery_keeps_message_and_fills_stats(
        self, sync_engine, connection
    ):
        sha = "feedface1234567"
        await sync_engine.ingest_commit(
            connection.id, make_commit(sha, "Original", added=["a.py"]), None
        )
        result = await sync_engine.ingest_commit(
            connection.id, make_commit(sha, "Rewritten", additions=10), "develop"
        )

        commit = result.commit
        assert commit.message == "Original"
        assert commit.branch_name == "develop"
        assert commit.additions == 10
        assert commit.changed_files == 1

    async def test_plain_reference_moves_todo_to_in_progress(
        self, sync_engine, tasks, connection
    ):
        tasks.add(8, TaskStatus.TODO)
        result = await sync_engine.ingest_commit(
            connection.id, make_commit(message="Start on #8"), "main"
        )
        assert result.tasks_transitioned == [8]
        assert tasks.transitions == [(8, TaskStatus.IN_PROGRESS)]

    async def test_plain_reference_leaves_other_statuses(
        self, sync_engine, tasks, connection
    ):
        tasks.add(8, TaskStatus.REVIEW)
        await sync_engine.ingest_commit(
            connection.id, make_commit(message="Touch #8"), "main"
        )
        assert tasks.transitions == []

    async def test_done_task_is_not_completed_again(
        self, sync_engine, tasks, connection
    ):
        tasks.add(3, TaskStatus.DONE)
        result = await sync_engine.ingest_commit(
            connection.id, make_commit(message="closes #3"), "main"
        )
        assert len(result.links_created) == 1
        assert tasks.completed == []

    async def test_missing_and_foreign_tasks_are_skipped(
        self, sync_engine, tasks, connection, session_factory
    ):
        tasks.add(20, project_id=99)
        result = await sync_engine.ingest_commit(
            connection.id, make_commit(message="fixes #20, see #21"), "main"
        )
        assert sorted(result.skipped_tasks) == [20, 21]
        assert result.links_created == []
        assert result.errors == []
        assert await count(session_factory, TaskLink) == 0

    async def test_one_failing_reference_does_not_stop_the_rest(
        self, sync_engine, tasks, connection
    ):
        tasks.add(1)
        tasks.add(2)
        tasks.failing.add(1)

        result = await sync_engine.ingest_commit(
            connection.id, make_commit(message="closes #1, closes #2"), "main"
        )

        assert result.degraded
        assert len(result.errors) == 1
        assert "task 1" in result.errors[0]
        assert tasks.completed == [2]

    async def test_disconnected_connection_is_refused(
        self, sync_engine, health, connection, session_factory
    ):
        await health.disconnect(connection.id)
        with pytest.raises(ConnectionUnavailableError):
            await sync_engine.ingest_commit(connection.id, make_commit(), "main")
        assert await count(session_factory, Commit) == 0


class TestIngestPullRequest:
    """Tests for ingest_pull_request and merge reconciliation."""

    async def test_open_pull_request_moves_task_to_review(
        self, sync_engine, tasks, connection
    ):
        tasks.add(10, TaskStatus.IN_PROGRESS)
        result = await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(title="Widget export", body="Closes #10")
        )
        assert result.created
        assert result.pull_request.status == PullRequestStatus.OPEN
        assert tasks.transitions == [(10, TaskStatus.REVIEW)]
        assert tasks.completed == []

    async def test_merge_completes_closing_links_once(
        self, sync_engine, tasks, connection, session_factory
    ):
        tasks.add(10, TaskStatus.IN_PROGRESS)
        tasks.add(11, TaskStatus.IN_PROGRESS)
        body = "Closes #10, related to #11"
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(body=body)
        )

        merged = make_pull_request(body=body, state="closed", merged=True)
        first = await sync_engine.ingest_pull_request(connection.id, merged)
        second = await sync_engine.ingest_pull_request(connection.id, merged)

        assert first.merged_now
        assert first.tasks_completed == [10]
        assert not second.merged_now
        assert second.tasks_completed == []
        assert tasks.completed == [10]
        assert await count(session_factory, PullRequest) == 1

    async def test_completion_failed_during_merge_is_retried_later(
        self, sync_engine, tasks, connection
    ):
        tasks.add(7, TaskStatus.IN_PROGRESS)
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(body="Closes #7")
        )
        merged = make_pull_request(body="Closes #7", state="closed", merged=True)

        tasks.failing.add(7)
        failed = await sync_engine.ingest_pull_request(connection.id, merged)
        assert failed.merged_now
        assert len(failed.errors) == 1
        assert tasks.completed == []

        tasks.failing.clear()
        retried = await sync_engine.ingest_pull_request(connection.id, merged)

        assert not retried.merged_now
        assert retried.tasks_completed == [7]
        assert tasks.tasks[7].status == TaskStatus.DONE

    async def test_relink_completes_tasks_of_merged_pull_request(
        self, sync_engine, tasks, connection
    ):
        tasks.add(7, TaskStatus.REVIEW)
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(body="Fixes #7")
        )
        tasks.failing.add(7)
        pull_request = (
            await sync_engine.ingest_pull_request(
                connection.id,
                make_pull_request(body="Fixes #7", state="closed", merged=True),
            )
        ).pull_request
        tasks.failing.clear()

        outcome = await sync_engine.relink_pull_requests(connection.id, [pull_request])

        assert outcome.tasks_completed == [7]
        assert tasks.completed == [7]

    async def test_failing_task_is_reported_once(self, sync_engine, tasks, connection):
        tasks.add(7, TaskStatus.IN_PROGRESS)
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(body="Closes #7")
        )
        tasks.failing.add(7)

        result = await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(body="Closes #7", state="closed", merged=True)
        )

        assert result.errors == ["task 7: task service unavailable for 7"]

    async def test_stale_open_event_does_not_unmerge(self, sync_engine, connection):
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(state="closed", merged=True)
        )
        result = await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(state="open")
        )
        assert result.pull_request.merged
        assert result.pull_request.status == PullRequestStatus.CLOSED

    async def test_closed_without_merge_returns_review_to_in_progress(
        self, sync_engine, tasks, connection
    ):
        tasks.add(4, TaskStatus.IN_PROGRESS)
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(body="fixes #4")
        )
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(body="fixes #4", state="closed")
        )
        assert tasks.transitions == [
            (4, TaskStatus.REVIEW),
            (4, TaskStatus.IN_PROGRESS),
        ]
        assert tasks.completed == []

    async def test_draft_moves_todo_to_in_progress(
        self, sync_engine, tasks, connection
    ):
        tasks.add(6, TaskStatus.TODO)
        result = await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(title="WIP TASK-6", draft=True)
        )
        assert result.pull_request.status == PullRequestStatus.DRAFT
        assert tasks.transitions == [(6, TaskStatus.IN_PROGRESS)]

    async def test_unchanged_redelivery_applies_nothing(
        self, sync_engine, tasks, connection
    ):
        tasks.add(10, TaskStatus.IN_PROGRESS)
        payload = make_pull_request(body="#10")
        await sync_engine.ingest_pull_request(connection.id, payload)
        tasks.tasks[10] = tasks.tasks[10].model_copy(
            update={"status": TaskStatus.IN_PROGRESS}
        )
        await sync_engine.ingest_pull_request(connection.id, payload)
        assert tasks.transitions == [(10, TaskStatus.REVIEW)]

    async def test_review_updates_comment_count(self, sync_engine, connection):
        await sync_engine.ingest_pull_request(connection.id, make_pull_request())
        updated = await sync_engine.record_review(
            connection.id, make_pull_request(review_comments=3)
        )
        assert updated.review_comments == 3

    async def test_review_on_unknown_pull_request(self, sync_engine, connection):
        assert await sync_engine.record_review(
            connection.id, make_pull_request(number=404)
        ) is None


class TestPullRequestStatus:
    @pytest.mark.parametrize(
        "kwargs,expected",
        [
            ({}, PullRequestStatus.OPEN),
            ({"draft": True}, PullRequestStatus.DRAFT),
            ({"state": "closed"}, PullRequestStatus.CLOSED),
            ({"state": "closed", "merged": True}, PullRequestStatus.CLOSED),
        ],
    )
    def test_mapping(self, kwargs, expected):
        assert pull_request_status(make_pull_request(**kwargs)) == expected


class TestManualLinks:
    """Tests for link_commit and link_pull_request."""

    async def test_link_commit_is_idempotent_and_has_no_side_effects(
        self, sync_engine, tasks, connection
    ):
        tasks.add(30, TaskStatus.TODO)
        commit = (
            await sync_engine.ingest_commit(connection.id, make_commit(), "main")
        ).commit

        link, created = await sync_engine.link_commit(commit.id, 30, LinkType.CLOSES)
        again, created_again = await sync_engine.link_commit(
            commit.id, 30, LinkType.CLOSES
        )

        assert created and not created_again
        assert link.id == again.id
        assert link.auto_status_update is False
        assert tasks.completed == []
        assert tasks.transitions == []

    async def test_link_pull_request(self, sync_engine, tasks, connection):
        tasks.add(31)
        pull_request = (
            await sync_engine.ingest_pull_request(connection.id, make_pull_request())
        ).pull_request
        link, created = await sync_engine.link_pull_request(
            pull_request.id, 31, LinkType.REFERENCE
        )
        assert created
        assert link.pull_request_id == pull_request.id

    async def test_unknown_commit(self, sync_engine):
        with pytest.raises(RecordNotFoundError):
            await sync_engine.link_commit(12345, 1, LinkType.REFERENCE)

    async def test_unknown_task(self, sync_engine, connection):
        commit = (
            await sync_engine.ingest_commit(connection.id, make_commit(), "main")
        ).commit
        with pytest.raises(RecordNotFoundError):
            await sync_engine.link_commit(commit.id, 777, LinkType.REFERENCE)


class TestRelink:
    async def test_relink_commits_picks_up_new_tasks(
        self, sync_engine, tasks, connection
    ):
        commit = (
            await sync_engine.ingest_commit(
                connection.id, make_commit(message="Prep for #50"), "main"
            )
        ).commit
        assert commit is not None

        tasks.add(50, TaskStatus.TODO)
        outcome = await sync_engine.relink_commits(connection.id, [commit])

        assert len(outcome.links_created) == 1
        assert tasks.transitions == [(50, TaskStatus.IN_PROGRESS)]
