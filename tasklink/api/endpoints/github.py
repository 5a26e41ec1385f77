from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from tasklink.db.models.connection import ConnectionPublic
from tasklink.dependencies.services import (
    ConnectionServiceDep,
    HealthMonitorDep,
    OAuthBrokerDep,
    SyncEngineDep,
    WebhookProcessorDep,
)
from tasklink.schemas.github import (
    ConnectionCreate,
    ConnectionDetail,
    ManualLinkCreate,
    ManualLinkResult,
    OAuthCallbackResult,
    RepositorySearchRequest,
    WebhookResponse,
)
from tasklink.services.github.connections import RepositorySearchResult, SyncResults
from tasklink.services.github.health import ConnectionStatistics
from tasklink.services.github.webhook_service import WebhookReason

router = APIRouter()


# -----------------------------------------------------------------------------
# Webhook
# -----------------------------------------------------------------------------
@router.post("/webhook", response_model=WebhookResponse)
async def handle_github_webhook(
    request: Request,
    processor: WebhookProcessorDep,
    x_github_event: str = Header(...),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_delivery: Optional[str] = Header(None),
):
    """
    Handle GitHub webhook requests.

    The raw body is verified before anything is parsed.

    Args:
        request: The incoming HTTP request.
        x_github_event: The GitHub event type (e.g., 'push', 'pull_request').
        x_hub_signature_256: HMAC SHA-256 signature of the body.
        x_github_delivery: Unique delivery id, used for dedupe.
    """
    body = await request.body()
    outcome = await processor.handle(
        x_hub_signature_256, body, x_github_event, x_github_delivery
    )
    if outcome.reason == WebhookReason.INVALID_SIGNATURE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if outcome.reason == WebhookReason.MALFORMED_PAYLOAD:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")

    return WebhookResponse(
        accepted=outcome.accepted,
        reason=outcome.reason.value,
        detail=outcome.detail,
        queued=outcome.queued,
        actions=outcome.actions,
    )


# -----------------------------------------------------------------------------
# OAuth
# -----------------------------------------------------------------------------
@router.get("/oauth/authorize")
async def start_oauth(broker: OAuthBrokerDep, project_id: int = Query(...)):
    """Redirect the browser to GitHub's consent page."""
    authorization = broker.start_authorization(project_id)
    return RedirectResponse(authorization.authorization_url, status_code=status.HTTP_302_FOUND)


@router.api_route(
    "/oauth/callback", methods=["GET", "POST"], response_model=OAuthCallbackResult
)
async def oauth_callback(
    broker: OAuthBrokerDep,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    result = await broker.handle_callback(code, state)
    return OAuthCallbackResult(
        project_id=result.project_id,
        access_token=result.access_token,
        token_type=result.token_type,
        scope=result.scope,
        user=result.user_info,
    )


# -----------------------------------------------------------------------------
# Connections
# -----------------------------------------------------------------------------
@router.post(
    "/connections",
    response_model=ConnectionPublic,
    status_code=status.HTTP_201_CREATED,
)
async def create_connection(payload: ConnectionCreate, service: ConnectionServiceDep):
    connection = await service.create_connection(
        payload.project_id,
        payload.repository_full_name,
        payload.access_token,
        payload.token_expires_at,
    )
    return connection.to_public()


@router.get("/connections/{connection_id}", response_model=ConnectionDetail)
async def get_connection(
    connection_id: int, service: ConnectionServiceDep, health: HealthMonitorDep
):
    connection = await service.get_connection(connection_id)
    return ConnectionDetail(
        connection=connection.to_public(), health=health.assess(connection)
    )


@router.delete("/connections/{connection_id}", response_model=ConnectionPublic)
async def disconnect_connection(connection_id: int, service: ConnectionServiceDep):
    connection = await service.disconnect_connection(connection_id)
    return connection.to_public()


@router.post("/connections/{connection_id}/sync", response_model=SyncResults)
async def sync_connection(connection_id: int, service: ConnectionServiceDep):
    return await service.sync_connection(connection_id)


@router.get(
    "/projects/{project_id}/connections", response_model=List[ConnectionPublic]
)
async def list_connections(
    project_id: int,
    service: ConnectionServiceDep,
    include_disconnected: bool = False,
):
    connections = await service.list_connections(project_id, include_disconnected)
    return [connection.to_public() for connection in connections]


@router.get(
    "/projects/{project_id}/statistics", response_model=ConnectionStatistics
)
async def connection_statistics(project_id: int, health: HealthMonitorDep):
    return await health.statistics(project_id)


@router.post("/repositories/search", response_model=RepositorySearchResult)
async def search_repositories(
    payload: RepositorySearchRequest, service: ConnectionServiceDep
):
    return await service.search_repositories(
        payload.access_token, payload.query, payload.page, payload.per_page
    )


# -----------------------------------------------------------------------------
# Manual links
# -----------------------------------------------------------------------------
@router.post("/commits/{commit_id}/links", response_model=ManualLinkResult)
async def link_commit(commit_id: int, payload: ManualLinkCreate, engine: SyncEngineDep):
    link, created = await engine.link_commit(commit_id, payload.task_id, payload.link_type)
    return ManualLinkResult(link=link.to_public(), created=created)


@router.post("/pull-requests/{pull_request_id}/links", response_model=ManualLinkResult)
async def link_pull_request(
    pull_request_id: int, payload: ManualLinkCreate, engine: SyncEngineDep
):
    link, created = await engine.link_pull_request(
        pull_request_id, payload.task_id, payload.link_type
    )
    return ManualLinkResult(link=link.to_public(), created=created)
