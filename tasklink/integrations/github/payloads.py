"""
Typed decoding of GitHub webhook payloads.

Each supported event type maps to one pydantic model with the fields the engine
reads. Unknown extra fields are ignored; missing required fields raise
``pydantic.ValidationError`` before any state is touched.
"""

from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RepositoryRef(_Payload):
    full_name: str
    html_url: Optional[str] = None


class WebhookEnvelope(_Payload):
    """Minimal shape shared by every repository-scoped event."""

    repository: RepositoryRef


# -----------------------------------------------------------------------------
# push
# -----------------------------------------------------------------------------
class CommitIdentity(_Payload):
    name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None


class PushCommit(_Payload):
    id: str = Field(min_length=7)
    message: str
    timestamp: Optional[datetime] = None
    url: Optional[str] = None
    author: CommitIdentity = Field(default_factory=CommitIdentity)
    committer: Optional[CommitIdentity] = None
    added: Optional[List[str]] = None
    removed: Optional[List[str]] = None
    modified: Optional[List[str]] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None

    @property
    def changed_files(self) -> Optional[int]:
        if self.added is None and self.removed is None and self.modified is None:
            return None
        return len(self.added or []) + len(self.removed or []) + len(self.modified or [])


class PushEvent(_Payload):
    ref: str
    repository: RepositoryRef
    commits: List[PushCommit] = Field(default_factory=list)
    deleted: bool = False

    @property
    def branch(self) -> Optional[str]:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return None


# -----------------------------------------------------------------------------
# pull_request / pull_request_review
# -----------------------------------------------------------------------------
class UserRef(_Payload):
    login: str


class BranchRef(_Payload):
    ref: str
    sha: Optional[str] = None


class PullRequestPayload(_Payload):
    number: int
    title: str
    body: Optional[str] = None
    state: str
    draft: bool = False
    merged: Optional[bool] = None
    merged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    html_url: Optional[str] = None
    user: Optional[UserRef] = None
    head: Optional[BranchRef] = None
    base: Optional[BranchRef] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None
    review_comments: Optional[int] = None

    @property
    def is_merged(self) -> bool:
        return bool(self.merged) or self.merged_at is not None


class PullRequestEvent(_Payload):
    action: str
    pull_request: PullRequestPayload
    repository: RepositoryRef


class PullRequestReviewEvent(_Payload):
    action: str
    pull_request: PullRequestPayload
    repository: RepositoryRef


WebhookEvent = Union[PushEvent, PullRequestEvent, PullRequestReviewEvent]

EVENT_MODELS = {
    "push": PushEvent,
    "pull_request": PullRequestEvent,
    "pull_request_review": PullRequestReviewEvent,
}


def decode_event(event_type: str, payload: dict) -> Optional[WebhookEvent]:
    """
    Decode ``payload`` for ``event_type``.

    Returns None for event types the engine does not process.

    Raises:
        pydantic.ValidationError: if a supported event is malformed.
    """
    model = EVENT_MODELS.get(event_type)
    if model is None:
        return None
    return model.model_validate(payload)
