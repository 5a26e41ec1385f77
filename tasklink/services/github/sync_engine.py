"""
Sync Engine: commits and pull requests into task links and task status.

Idempotency rests on natural keys:

- commits upsert on ``sha``; only branch and stats may change afterwards,
- pull requests upsert on ``(connection_id, number)``,
- task links insert with ``ON CONFLICT DO NOTHING`` on ``(source, task, type)``.

Each task reference is processed on its own. A failing lookup, link, or status
call is recorded in the result's ``errors`` and the remaining references still
run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklink.core.logging import get_logger
from tasklink.db.models.commit import Commit
from tasklink.db.models.connection import Connection, ConnectionStatus
from tasklink.db.models.pull_request import PullRequest, PullRequestStatus
from tasklink.db.models.task_link import LinkType, TaskLink
from tasklink.db.session import AsyncSessionLocal
from tasklink.db.upsert import insert_for
from tasklink.integrations.github.payloads import PullRequestPayload, PushCommit
from tasklink.services.activity import (
    ActivityEvent,
    ActivityPublisher,
    ActivityType,
    emit,
)
from tasklink.services.github.exceptions import (
    ConnectionNotFoundError,
    ConnectionUnavailableError,
    RecordNotFoundError,
)
from tasklink.services.github.references import (
    TaskReference,
    parse_pull_request_references,
    parse_references,
)
from tasklink.services.tasks.repository import TaskInfo, TaskRepository, TaskStatus

logger = get_logger(__name__)


@dataclass
class LinkOutcome:
    links_created: List[TaskLink] = field(default_factory=list)
    tasks_completed: List[int] = field(default_factory=list)
    tasks_transitioned: List[int] = field(default_factory=list)
    skipped_tasks: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.errors)


@dataclass
class CommitIngestResult(LinkOutcome):
    commit: Optional[Commit] = None


@dataclass
class PullRequestIngestResult(LinkOutcome):
    pull_request: Optional[PullRequest] = None
    created: bool = False
    merged_now: bool = False


def pull_request_status(payload: PullRequestPayload) -> PullRequestStatus:
    if payload.is_merged or payload.state == "closed":
        return PullRequestStatus.CLOSED
    if payload.draft:
        return PullRequestStatus.DRAFT
    return PullRequestStatus.OPEN


class SyncEngine:
    """Persists GitHub activity and applies its effects on tasks."""

    def __init__(
        self,
        tasks: TaskRepository,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        publisher: Optional[ActivityPublisher] = None,
    ):
        self.tasks = tasks
        self.session_factory = session_factory or AsyncSessionLocal
        self.publisher = publisher

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------
    async def ingest_commit(
        self,
        connection_id: int,
        payload: PushCommit,
        branch: Optional[str] = None,
    ) -> CommitIngestResult:
        """Upsert one commit and materialise the task references in its message."""
        async with self.session_factory() as session:
            connection = await self._live_connection(session, connection_id)
            commit = await self._upsert_commit(session, connection_id, payload, branch)
            await session.commit()

        result = CommitIngestResult(commit=commit)
        await self._link_commit(connection, commit, result)

        logger.info(
            "Commit %s on connection %s: %d links created, %d tasks completed",
            commit.short_sha,
            connection_id,
            len(result.links_created),
            len(result.tasks_completed),
        )
        return result

    async def _upsert_commit(
        self,
        session: AsyncSession,
        connection_id: int,
        payload: PushCommit,
        branch: Optional[str],
    ) -> Commit:
        committer = payload.committer
        stmt = insert_for(session, Commit).values(
            sha=payload.id,
            connection_id=connection_id,
            author_name=payload.author.name,
            author_email=payload.author.email,
            author_username=payload.author.username,
            committer_name=committer.name if committer else None,
            committer_email=committer.email if committer else None,
            message=payload.message,
            committed_at=payload.timestamp,
            branch_name=branch,
            additions=payload.additions,
            deletions=payload.deletions,
            changed_files=payload.changed_files,
            url=payload.url,
            created_at=datetime.now(timezone.utc),
        )
        # Authorship and message stay as first observed
        stmt = stmt.on_conflict_do_update(
            index_elements=[Commit.sha],
            set_={
                "branch_name": func.coalesce(stmt.excluded.branch_name, Commit.branch_name),
                "additions": func.coalesce(stmt.excluded.additions, Commit.additions),
                "deletions": func.coalesce(stmt.excluded.deletions, Commit.deletions),
                "changed_files": func.coalesce(
                    stmt.excluded.changed_files, Commit.changed_files
                ),
            },
        ).returning(Commit.id)

        commit_id = (await session.execute(stmt)).scalar_one()
        return await session.get(Commit, commit_id, populate_existing=True)

    async def _link_commit(
        self,
        connection: Connection,
        commit: Commit,
        outcome: LinkOutcome,
    ) -> None:
        completed: Set[int] = set()
        for reference in parse_references(commit.message):
            try:
                task = await self._find_project_task(connection, reference.task_id)
                if task is None:
                    outcome.skipped_tasks.append(reference.task_id)
                    continue

                link, created = await self._upsert_link(reference, commit_id=commit.id)
                if created:
                    outcome.links_created.append(link)
                    await self._emit(
                        ActivityType.TASK_LINKED,
                        connection.id,
                        task.id,
                        f"Commit {commit.short_sha} linked to task #{task.id} "
                        f"({reference.link_type.value})",
                    )

                if reference.link_type.is_closing:
                    if task.status != TaskStatus.DONE and task.id not in completed:
                        await self._complete(
                            connection.id, task, f"commit {commit.short_sha}", outcome
                        )
                        completed.add(task.id)
                elif created and task.status == TaskStatus.TODO:
                    await self._transition(
                        connection.id, task, TaskStatus.IN_PROGRESS, outcome
                    )
            except Exception as e:
                outcome.errors.append(f"task {reference.task_id}: {e}")
                logger.warning(
                    "Reference to task %s in commit %s failed: %s",
                    reference.task_id,
                    commit.short_sha,
                    e,
                )

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------
    async def ingest_pull_request(
        self, connection_id: int, payload: PullRequestPayload
    ) -> PullRequestIngestResult:
        """Upsert one pull request, link its references and reconcile merges."""
        async with self.session_factory() as session:
            connection = await self._live_connection(session, connection_id)
            pull_request, previous = await self._upsert_pull_request(
                session, connection_id, payload
            )
            await session.commit()

            merged_now = pull_request.merged and not (previous and previous[1])
            status_changed = previous is None or previous != (
                pull_request.status,
                pull_request.merged,
            )

        result = PullRequestIngestResult(
            pull_request=pull_request,
            created=previous is None,
            merged_now=merged_now,
        )
        await self._link_pull_request(
            connection, pull_request, result, status_changed
        )

        logger.info(
            "PR #%s on connection %s (%s%s): %d links created, %d tasks completed",
            pull_request.number,
            connection_id,
            pull_request.status,
            ", merged" if pull_request.merged else "",
            len(result.links_created),
            len(result.tasks_completed),
        )
        return result

    async def record_review(
        self, connection_id: int, payload: PullRequestPayload
    ) -> Optional[PullRequest]:
        """Refresh the review comment count of a known pull request."""
        async with self.session_factory() as session:
            await self._live_connection(session, connection_id)
            result = await session.exec(
                select(PullRequest).where(
                    PullRequest.connection_id == connection_id,
                    PullRequest.number == payload.number,
                )
            )
            pull_request = result.first()
            if pull_request is None:
                return None
            if payload.review_comments is not None:
                pull_request.review_comments = payload.review_comments
            pull_request.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return pull_request

    async def _upsert_pull_request(
        self,
        session: AsyncSession,
        connection_id: int,
        payload: PullRequestPayload,
    ) -> Tuple[PullRequest, Optional[Tuple[str, bool]]]:
        """Returns the row and its (status, merged) before this event, if it existed."""
        statement = select(PullRequest).where(
            PullRequest.connection_id == connection_id,
            PullRequest.number == payload.number,
        )
        existing = (await session.exec(statement)).first()

        if existing is None:
            stmt = (
                insert_for(session, PullRequest)
                .values(
                    connection_id=connection_id,
                    number=payload.number,
                    title=payload.title,
                    status=PullRequestStatus.OPEN,
                    merged=False,
                    review_comments=0,
                    updated_at=datetime.now(timezone.utc),
                )
                .on_conflict_do_nothing(
                    index_elements=[PullRequest.connection_id, PullRequest.number]
                )
                .returning(PullRequest.id)
            )
            inserted_id = (await session.execute(stmt)).scalar_one_or_none()
            existing = (await session.exec(statement)).one()
            previous = None if inserted_id is not None else (existing.status, existing.merged)
        else:
            previous = (existing.status, existing.merged)

        # A merge is never undone by a late, stale event
        merged = existing.merged or payload.is_merged
        existing.title = payload.title
        existing.description = payload.body
        existing.status = (
            PullRequestStatus.CLOSED if merged else pull_request_status(payload)
        )
        existing.merged = merged
        existing.merged_at = payload.merged_at or existing.merged_at
        existing.opened_at = payload.created_at or existing.opened_at
        existing.author_username = payload.user.login if payload.user else existing.author_username
        existing.head_branch = payload.head.ref if payload.head else existing.head_branch
        existing.base_branch = payload.base.ref if payload.base else existing.base_branch
        existing.url = payload.html_url or existing.url
        for stat in ("additions", "deletions", "changed_files", "review_comments"):
            value = getattr(payload, stat)
            if value is not None:
                setattr(existing, stat, value)
        existing.updated_at = datetime.now(timezone.utc)
        return existing, previous

    async def _link_pull_request(
        self,
        connection: Connection,
        pull_request: PullRequest,
        outcome: LinkOutcome,
        status_changed: bool,
    ) -> None:
        new_link_ids: Set[int] = set()
        failed: Set[int] = set()
        references = parse_pull_request_references(
            pull_request.title, pull_request.description
        )
        for reference in references:
            try:
                task = await self._find_project_task(connection, reference.task_id)
                if task is None:
                    outcome.skipped_tasks.append(reference.task_id)
                    continue
                link, created = await self._upsert_link(
                    reference, pull_request_id=pull_request.id
                )
                if created:
                    new_link_ids.add(link.id)
                    outcome.links_created.append(link)
                    await self._emit(
                        ActivityType.TASK_LINKED,
                        connection.id,
                        task.id,
                        f"PR #{pull_request.number} linked to task #{task.id} "
                        f"({reference.link_type.value})",
                    )
            except Exception as e:
                failed.add(reference.task_id)
                outcome.errors.append(f"task {reference.task_id}: {e}")
                logger.warning(
                    "Reference to task %s in PR #%s failed: %s",
                    reference.task_id,
                    pull_request.number,
                    e,
                )

        links = await self._auto_links(pull_request.id)
        handled: Set[int] = set()
        for link in links:
            if link.task_id in handled or link.task_id in failed:
                continue
            is_new = link.id in new_link_ids
            if pull_request.merged:
                # Re-checked on every event; the DONE check keeps completion single
                if not link.is_closing:
                    continue
            elif not (status_changed or is_new):
                continue

            handled.add(link.task_id)
            try:
                await self._apply_pull_request_status(connection, pull_request, link, outcome)
            except Exception as e:
                outcome.errors.append(f"task {link.task_id}: {e}")
                logger.warning(
                    "Status update of task %s from PR #%s failed: %s",
                    link.task_id,
                    pull_request.number,
                    e,
                )

    async def _apply_pull_request_status(
        self,
        connection: Connection,
        pull_request: PullRequest,
        link: TaskLink,
        outcome: LinkOutcome,
    ) -> None:
        task = await self._find_project_task(connection, link.task_id)
        if task is None:
            return

        if pull_request.merged:
            if task.status != TaskStatus.DONE:
                await self._complete(
                    connection.id, task, f"PR #{pull_request.number}", outcome
                )
            return

        if pull_request.status == PullRequestStatus.OPEN:
            if task.status not in (TaskStatus.REVIEW, TaskStatus.DONE):
                await self._transition(connection.id, task, TaskStatus.REVIEW, outcome)
        elif pull_request.status == PullRequestStatus.DRAFT:
            if task.status == TaskStatus.TODO:
                await self._transition(
                    connection.id, task, TaskStatus.IN_PROGRESS, outcome
                )
        elif task.status == TaskStatus.REVIEW:
            # Closed without merging
            await self._transition(connection.id, task, TaskStatus.IN_PROGRESS, outcome)

    async def _auto_links(self, pull_request_id: int) -> List[TaskLink]:
        async with self.session_factory() as session:
            result = await session.exec(
                select(TaskLink)
                .where(
                    TaskLink.pull_request_id == pull_request_id,
                    TaskLink.auto_status_update == True,  # noqa: E712
                )
                .order_by(TaskLink.id)
            )
            links = list(result.all())
        # Closing links first so a task linked twice is handled by its strongest link
        return sorted(links, key=lambda link: not link.is_closing)

    # ------------------------------------------------------------------
    # Re-linking and manual links
    # ------------------------------------------------------------------
    async def relink_commits(
        self, connection_id: int, commits: Iterable[Commit]
    ) -> LinkOutcome:
        """Re-run reference linking for already stored commits."""
        outcome = LinkOutcome()
        async with self.session_factory() as session:
            connection = await self._live_connection(session, connection_id)
        for commit in commits:
            await self._link_commit(connection, commit, outcome)
        return outcome

    async def relink_pull_requests(
        self, connection_id: int, pull_requests: Iterable[PullRequest]
    ) -> LinkOutcome:
        """Re-run reference linking for already stored pull requests."""
        outcome = LinkOutcome()
        async with self.session_factory() as session:
            connection = await self._live_connection(session, connection_id)
        for pull_request in pull_requests:
            await self._link_pull_request(connection, pull_request, outcome, False)
        return outcome

    async def link_commit(
        self, commit_id: int, task_id: int, link_type: LinkType
    ) -> Tuple[TaskLink, bool]:
        """Manually link a stored commit to a task. No status change is applied."""
        async with self.session_factory() as session:
            commit = await session.get(Commit, commit_id)
            if commit is None:
                raise RecordNotFoundError(f"Commit {commit_id} not found")
            connection = await self._live_connection(session, commit.connection_id)

        await self._require_task(connection, task_id)
        link, created = await self._upsert_link(
            TaskReference(task_id, link_type, "manual"),
            commit_id=commit.id,
            auto_status_update=False,
        )
        if created:
            await self._emit(
                ActivityType.TASK_LINKED,
                connection.id,
                task_id,
                f"Commit {commit.short_sha} manually linked to task #{task_id}",
            )
        return link, created

    async def link_pull_request(
        self, pull_request_id: int, task_id: int, link_type: LinkType
    ) -> Tuple[TaskLink, bool]:
        """Manually link a stored pull request to a task. No status change is applied."""
        async with self.session_factory() as session:
            pull_request = await session.get(PullRequest, pull_request_id)
            if pull_request is None:
                raise RecordNotFoundError(f"Pull request {pull_request_id} not found")
            connection = await self._live_connection(session, pull_request.connection_id)

        await self._require_task(connection, task_id)
        link, created = await self._upsert_link(
            TaskReference(task_id, link_type, "manual"),
            pull_request_id=pull_request.id,
            auto_status_update=False,
        )
        if created:
            await self._emit(
                ActivityType.TASK_LINKED,
                connection.id,
                task_id,
                f"PR #{pull_request.number} manually linked to task #{task_id}",
            )
        return link, created

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    async def _live_connection(
        self, session: AsyncSession, connection_id: int
    ) -> Connection:
        connection = await session.get(Connection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        if connection.status == ConnectionStatus.DISCONNECTED:
            raise ConnectionUnavailableError(
                f"Connection {connection_id} is disconnected"
            )
        return connection

    async def _find_project_task(
        self, connection: Connection, task_id: int
    ) -> Optional[TaskInfo]:
        task = await self.tasks.find_task(task_id)
        if task is None:
            logger.info("Task %s referenced on connection %s not found", task_id, connection.id)
            return None
        if task.project_id is not None and task.project_id != connection.project_id:
            logger.info(
                "Task %s belongs to project %s, not %s; ignoring",
                task_id,
                task.project_id,
                connection.project_id,
            )
            return None
        return task

    async def _require_task(self, connection: Connection, task_id: int) -> TaskInfo:
        task = await self._find_project_task(connection, task_id)
        if task is None:
            raise RecordNotFoundError(f"Task {task_id} not found")
        return task

    async def _upsert_link(
        self,
        reference: TaskReference,
        *,
        commit_id: Optional[int] = None,
        pull_request_id: Optional[int] = None,
        auto_status_update: bool = True,
    ) -> Tuple[TaskLink, bool]:
        """Insert the link unless (source, task, type) exists. Returns (link, created)."""
        async with self.session_factory() as session:
            stmt = (
                insert_for(session, TaskLink)
                .values(
                    task_id=reference.task_id,
                    link_type=reference.link_type.value,
                    reference_text=reference.reference_text[:255],
                    auto_status_update=auto_status_update,
                    commit_id=commit_id,
                    pull_request_id=pull_request_id,
                    created_at=datetime.now(timezone.utc),
                )
                .on_conflict_do_nothing()
                .returning(TaskLink.id)
            )
            link_id = (await session.execute(stmt)).scalar_one_or_none()
            created = link_id is not None

            if not created:
                source = (
                    TaskLink.commit_id == commit_id
                    if commit_id is not None
                    else TaskLink.pull_request_id == pull_request_id
                )
                existing = await session.exec(
                    select(TaskLink.id).where(
                        source,
                        TaskLink.task_id == reference.task_id,
                        TaskLink.link_type == reference.link_type.value,
                    )
                )
                link_id = existing.one()

            await session.commit()
            link = await session.get(TaskLink, link_id)
        return link, created

    async def _complete(
        self,
        connection_id: int,
        task: TaskInfo,
        source: str,
        outcome: LinkOutcome,
    ) -> None:
        await self.tasks.complete_task(task.id)
        outcome.tasks_completed.append(task.id)
        logger.info("Task %s completed by %s", task.id, source)
        await self._emit(
            ActivityType.TASK_COMPLETED,
            connection_id,
            task.id,
            f"Task #{task.id} completed by {source}",
        )

    async def _transition(
        self,
        connection_id: int,
        task: TaskInfo,
        status: TaskStatus,
        outcome: LinkOutcome,
    ) -> None:
        await self.tasks.transition_status(task.id, status)
        outcome.tasks_transitioned.append(task.id)
        await self._emit(
            ActivityType.TASK_STATUS_CHANGED,
            connection_id,
            task.id,
            f"Task #{task.id} moved from {task.status.value} to {status.value}",
        )

    async def _emit(
        self,
        event_type: ActivityType,
        connection_id: int,
        task_id: Optional[int],
        description: str,
    ) -> None:
        await emit(
            self.publisher,
            ActivityEvent(
                type=event_type,
                connection_id=connection_id,
                task_id=task_id,
                description=description,
            ),
        )
