from dotenv import load_dotenv

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tasklink.api.api_v1 import router as api_v1
from tasklink.core.config import settings
from tasklink.core.lifespan import lifespan
from tasklink.core.logging import get_logger
from tasklink.integrations.github.errors import (
    AuthStateError,
    GitHubApiError,
    OAuthExchangeError,
)
from tasklink.services.github.exceptions import (
    ConnectionExistsError,
    ConnectionUnavailableError,
)
from tasklink.services.tasks import TaskServiceError

load_dotenv()  # Load .env variables into os.environ

logger = get_logger(__name__)

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})


@app.exception_handler(AuthStateError)
async def auth_state_error_handler(_request: Request, exc: AuthStateError):
    return _error(400, "invalid_state", str(exc))


@app.exception_handler(OAuthExchangeError)
async def oauth_exchange_error_handler(_request: Request, exc: OAuthExchangeError):
    return _error(400, exc.error_code or "oauth_exchange_failed", str(exc))


@app.exception_handler(ConnectionExistsError)
async def connection_exists_handler(_request: Request, exc: ConnectionExistsError):
    return _error(409, "connection_exists", str(exc))


@app.exception_handler(ConnectionUnavailableError)
async def connection_unavailable_handler(
    _request: Request, exc: ConnectionUnavailableError
):
    return _error(409, "connection_disconnected", str(exc))


@app.exception_handler(LookupError)
async def not_found_handler(_request: Request, exc: LookupError):
    return _error(404, "not_found", str(exc))


@app.exception_handler(GitHubApiError)
async def github_api_error_handler(_request: Request, exc: GitHubApiError):
    logger.warning("GitHub API error surfaced to client: %s", exc)
    return _error(502, type(exc).__name__, str(exc))


@app.exception_handler(TaskServiceError)
async def task_service_error_handler(_request: Request, exc: TaskServiceError):
    logger.warning("Task service error surfaced to client: %s", exc)
    return _error(502, "task_service_error", str(exc))


@app.get("/")
def root():
    return {"message": f"Hello from {settings.PROJECT_NAME}!"}


app.include_router(api_v1, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
