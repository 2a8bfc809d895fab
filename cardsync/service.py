"""
Card Catalog Sync — Request Handlers

JSON-in / JSON-out handlers for the operations an outer UI or CLI invokes.
Every handler takes the shared ServiceState and a request body dict and
returns (http_status, response_body). Request bodies accept camelCase keys
(categoryId, dryRun, ...) as well as snake_case; responses are camelCase.

`background: true` schedules the work on the running loop and answers 202
with the operationId immediately. Progress then lands in sync_logs.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import SyncStatus, settings
from cardsync.engine.matching import (
    TimeBudget,
    match_groups_to_sets,
    match_products_to_cards,
)
from cardsync.errors import CardSyncError, GameNotFoundError, JobNotFoundError, MatchingError
from cardsync.pipeline.jobs import SyncJobTracker, SyncLogger
from cardsync.pipeline.justtcg import JustTCGClient
from cardsync.pipeline.pool import CancellationToken
from cardsync.pipeline.rate import ThrottleContext
from cardsync.pipeline.sync import CatalogSync, ProductsSyncRequest
from cardsync.pipeline.tcgcsv import TcgCsvClient

logger = structlog.get_logger(__name__)

Response = tuple[int, dict[str, Any]]

# Failures a synchronous handler reports as a 500 body instead of raising.
HANDLED_ERRORS = (CardSyncError, SQLAlchemyError)


# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------


class ServiceState:
    """
    Process-wide handler state.

    One ThrottleContext is shared by every catalog-feed request so the
    token bucket and breaker see all traffic to that upstream. The pricing
    feed has its own quota and gets a separate one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        throttle: ThrottleContext | None = None,
        client_factory: Callable[[ThrottleContext], TcgCsvClient] = TcgCsvClient,
        pricing_throttle: ThrottleContext | None = None,
        pricing_client_factory: Callable[[ThrottleContext], JustTCGClient] | None = None,
    ):
        self.session_factory = session_factory
        self.throttle = throttle or ThrottleContext.from_settings()
        self.client_factory = client_factory
        self.pricing_throttle = pricing_throttle or ThrottleContext.from_settings(
            rps=settings.JUSTTCG_TARGET_RPS, burst=settings.JUSTTCG_BURST_TOKENS
        )
        self.pricing_client_factory = pricing_client_factory or (
            lambda t: JustTCGClient(throttle=t)
        )
        self.sync_log = SyncLogger(session_factory)
        self.tasks: dict[str, asyncio.Task[Any]] = {}
        self.tokens: dict[str, CancellationToken] = {}

    def spawn(
        self,
        operation_id: str,
        operation_type: str,
        work: Callable[[], Awaitable[Any]],
        token: CancellationToken | None = None,
    ) -> asyncio.Task[Any]:
        async def runner() -> Any:
            try:
                return await work()
            except Exception as e:
                logger.error(
                    "background_operation_failed",
                    operation_id=operation_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.sync_log.log(
                    operation_id, operation_type, SyncStatus.ERROR,
                    f"Background operation failed: {e}",
                    {"error": str(e), "error_type": type(e).__name__},
                )
                return None
            finally:
                self.tasks.pop(operation_id, None)
                self.tokens.pop(operation_id, None)

        task = asyncio.create_task(runner(), name=operation_id)
        self.tasks[operation_id] = task
        if token is not None:
            self.tokens[operation_id] = token
        logger.info("background_operation_scheduled", operation_id=operation_id)
        return task

    async def drain(self) -> None:
        """Wait for every background operation to finish."""
        if self.tasks:
            await asyncio.gather(*list(self.tasks.values()), return_exceptions=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CategoriesRequest(_Request):
    dry_run: bool = False
    background: bool = False


class GroupsRequest(_Request):
    category_id: int = Field(..., ge=1)
    dry_run: bool = False
    background: bool = False


class ProductsRequest(_Request):
    category_id: int | None = Field(default=None, ge=1)
    group_ids: list[int] | None = None
    group_name_filters: list[str] | None = None
    include_sealed: bool = True
    include_singles: bool = True
    dry_run: bool = False
    max_groups: int | None = Field(default=None, ge=1)
    page: int | None = Field(default=None, ge=1)
    page_size: int | None = Field(default=None, ge=1)
    background: bool = False
    retry_failed_job_id: str | None = None

    @model_validator(mode="after")
    def require_target(self) -> ProductsRequest:
        if self.category_id is None and not self.retry_failed_job_id:
            raise ValueError("categoryId is required unless retryFailedJobId is given")
        return self


class MatchRequest(_Request):
    game_id: str = Field(..., min_length=1)
    match_type: Literal["groups", "products", "both"] = "both"
    dry_run: bool = True
    only_unmapped: bool = True
    background: bool = False
    time_budget_seconds: float | None = Field(default=None, gt=0)
    resume_from_group: int | None = None
    resume_from_set: str | None = None


class PricingRequest(_Request):
    game_id: str = Field(..., min_length=1)
    category_id: int | None = Field(default=None, ge=1)
    background: bool = False


class CancelRequest(_Request):
    operation_id: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def camelize(value: Any) -> Any:
    """Recursively rewrite dict keys from snake_case to camelCase."""
    if isinstance(value, dict):
        return {
            (to_camel(k) if isinstance(k, str) else k): camelize(v) for k, v in value.items()
        }
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value


def _validation_error(e: ValidationError) -> Response:
    message = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
    )
    logger.warning("request_validation_failed", error=message)
    return 400, {"success": False, "error": message}


async def _failure(
    state: ServiceState, operation_id: str, operation_type: str, e: Exception
) -> Response:
    logger.error(
        "operation_failed",
        operation_id=operation_id,
        operation_type=operation_type,
        error=str(e),
        error_type=type(e).__name__,
    )
    await state.sync_log.log(
        operation_id, operation_type, SyncStatus.ERROR,
        f"Operation failed: {e}",
        {"error": str(e), "error_type": type(e).__name__},
    )
    return 500, {"success": False, "operationId": operation_id, "error": str(e)}


def _throttle(state: ServiceState) -> dict[str, Any]:
    return camelize(state.throttle.stats())


def _accepted(state: ServiceState, operation_id: str) -> Response:
    return 202, {
        "success": True,
        "status": "accepted",
        "operationId": operation_id,
        "throttle": _throttle(state),
    }


def _result(state: ServiceState, result: BaseModel, success: bool) -> Response:
    body = camelize(result.model_dump(mode="json"))
    body["success"] = success
    body["throttle"] = _throttle(state)
    return (200 if success else 502), body


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def handle_sync_categories(state: ServiceState, body: dict[str, Any]) -> Response:
    try:
        request = CategoriesRequest.model_validate(body)
    except ValidationError as e:
        return _validation_error(e)

    operation_id = f"tcgcsv-categories-{uuid.uuid4().hex[:12]}"

    async def work():
        async with state.client_factory(state.throttle) as client:
            return await CatalogSync(client, state.session_factory).sync_categories(
                dry_run=request.dry_run, operation_id=operation_id
            )

    if request.background:
        state.spawn(operation_id, "tcgcsv-categories", work)
        return _accepted(state, operation_id)
    try:
        result = await work()
    except HANDLED_ERRORS as e:
        return await _failure(state, operation_id, "tcgcsv-categories", e)
    return _result(state, result, result.success)


async def handle_sync_groups(state: ServiceState, body: dict[str, Any]) -> Response:
    try:
        request = GroupsRequest.model_validate(body)
    except ValidationError as e:
        return _validation_error(e)

    operation_id = f"tcgcsv-groups-{request.category_id}-{uuid.uuid4().hex[:12]}"

    async def work():
        async with state.client_factory(state.throttle) as client:
            return await CatalogSync(client, state.session_factory).sync_groups(
                request.category_id, dry_run=request.dry_run, operation_id=operation_id
            )

    if request.background:
        state.spawn(operation_id, "tcgcsv-groups", work)
        return _accepted(state, operation_id)
    try:
        result = await work()
    except HANDLED_ERRORS as e:
        return await _failure(state, operation_id, "tcgcsv-groups", e)
    return _result(state, result, result.success)


async def handle_sync_products(state: ServiceState, body: dict[str, Any]) -> Response:
    """
    Sync products for a category's groups.

    With only retryFailedJobId the category comes from that job.
    """
    try:
        request = ProductsRequest.model_validate(body)
    except ValidationError as e:
        return _validation_error(e)

    category_id = request.category_id
    if request.retry_failed_job_id:
        try:
            job = await SyncJobTracker(state.session_factory).get(request.retry_failed_job_id)
        except JobNotFoundError as e:
            return 404, {"success": False, "error": str(e)}
        except HANDLED_ERRORS as e:
            return await _failure(
                state, f"tcgcsv-products-retry-{uuid.uuid4().hex[:12]}", "tcgcsv-products", e
            )
        category_id = category_id or job.category_id
        if category_id is None:
            return 400, {"success": False, "error": "Job has no category to retry"}

    sync_request = ProductsSyncRequest(
        category_id=category_id,
        **request.model_dump(exclude={"category_id", "background"}),
    )
    operation_id = f"tcgcsv-products-{category_id}-{uuid.uuid4().hex[:12]}"
    token = CancellationToken()

    async def work():
        async with state.client_factory(state.throttle) as client:
            return await CatalogSync(client, state.session_factory).sync_products(
                sync_request, token=token, operation_id=operation_id
            )

    if request.background:
        state.spawn(operation_id, "tcgcsv-products", work, token=token)
        return _accepted(state, operation_id)
    try:
        result = await work()
    except HANDLED_ERRORS as e:
        return await _failure(state, operation_id, "tcgcsv-products", e)
    return _result(state, result, result.success)


async def handle_match(state: ServiceState, body: dict[str, Any]) -> Response:
    try:
        request = MatchRequest.model_validate(body)
    except ValidationError as e:
        return _validation_error(e)

    operation_id = f"match-{request.match_type}-{uuid.uuid4().hex[:12]}"

    async def work() -> dict[str, Any]:
        budget = TimeBudget(request.time_budget_seconds)
        response: dict[str, Any] = {
            "operation_id": operation_id,
            "game_id": request.game_id,
            "match_type": request.match_type,
            "dry_run": request.dry_run,
        }
        await state.sync_log.log(
            operation_id, "match", SyncStatus.STARTED,
            f"Starting {request.match_type} matching for game {request.game_id}",
            request.model_dump(),
        )
        async with state.session_factory() as session:
            groups = None
            if request.match_type in ("groups", "both"):
                groups = await match_groups_to_sets(
                    session,
                    request.game_id,
                    dry_run=request.dry_run,
                    budget=budget,
                    start_after=request.resume_from_group,
                )
                response["groups"] = groups.model_dump(mode="json")
            if request.match_type in ("products", "both"):
                pending = groups.links() if groups is not None and request.dry_run else None
                products = await match_products_to_cards(
                    session,
                    request.game_id,
                    dry_run=request.dry_run,
                    only_unmapped=request.only_unmapped,
                    budget=budget,
                    start_after=request.resume_from_set,
                    pending_links=pending,
                )
                response["products"] = products.model_dump(mode="json")
        response["elapsed_seconds"] = round(budget.elapsed(), 3)
        await state.sync_log.log(
            operation_id, "match", SyncStatus.COMPLETED,
            f"{request.match_type} matching complete",
            {k: v for k, v in response.items() if k not in ("groups", "products")},
        )
        return response

    if request.background:
        state.spawn(operation_id, "match", work)
        return _accepted(state, operation_id)

    try:
        response = await work()
    except MatchingError as e:
        logger.warning("match_rejected", game_id=request.game_id, error=str(e))
        await state.sync_log.log(operation_id, "match", SyncStatus.ERROR, str(e))
        return 404, {"success": False, "error": str(e)}
    except HANDLED_ERRORS as e:
        return await _failure(state, operation_id, "match", e)

    body = camelize(response)
    body["success"] = True
    return 200, body


async def handle_sync_pricing(state: ServiceState, body: dict[str, Any]) -> Response:
    """
    Pull one game's sets and cards from the pricing feed.

    Every listed game is upserted first. categoryId, when given, maps the
    requested game to its catalog category so it can be matched later.
    Sets that fail are reported in failedSets; the rest still land.
    """
    try:
        request = PricingRequest.model_validate(body)
    except ValidationError as e:
        return _validation_error(e)

    operation_id = f"justtcg-sync-{request.game_id}-{uuid.uuid4().hex[:12]}"
    op_type = "justtcg-sync"

    async def work() -> dict[str, Any]:
        await state.sync_log.log(
            operation_id, op_type, SyncStatus.STARTED,
            f"Starting pricing sync for game {request.game_id}",
            request.model_dump(),
        )
        async with state.pricing_client_factory(state.pricing_throttle) as client:
            games = await client.fetch_games()
            if request.game_id not in {g.id for g in games}:
                raise GameNotFoundError(f"Pricing feed has no game {request.game_id!r}")
            category_ids = (
                {request.game_id: request.category_id} if request.category_id else None
            )
            async with state.session_factory() as session:
                games_stored = await client.store_games(games, session, category_ids)
                summary = await client.sync_game(request.game_id, session)

        response = {
            "operation_id": operation_id,
            "game_id": request.game_id,
            "games_stored": games_stored,
            **summary,
        }
        if summary["failed_sets"]:
            await state.sync_log.log(
                operation_id, op_type, SyncStatus.WARNING,
                f"{len(summary['failed_sets'])} set(s) failed",
                {"failed_sets": summary["failed_sets"]},
            )
        await state.sync_log.log(
            operation_id, op_type, SyncStatus.COMPLETED,
            f"Pricing sync complete: {summary['cards']} cards stored",
            response,
        )
        return response

    if request.background:
        state.spawn(operation_id, op_type, work)
        return _accepted(state, operation_id)

    try:
        response = await work()
    except GameNotFoundError as e:
        logger.warning("pricing_game_not_found", game_id=request.game_id)
        await state.sync_log.log(operation_id, op_type, SyncStatus.ERROR, str(e))
        return 404, {"success": False, "operationId": operation_id, "error": str(e)}
    except HANDLED_ERRORS as e:
        return await _failure(state, operation_id, op_type, e)

    body = camelize(response)
    body["success"] = True
    body["throttle"] = camelize(state.pricing_throttle.stats())
    return 200, body


async def handle_throttle_stats(state: ServiceState, body: dict[str, Any] | None = None) -> Response:
    return 200, {
        "success": True,
        "throttle": _throttle(state),
        "activeOperations": sorted(state.tasks),
    }


async def handle_cancel(state: ServiceState, body: dict[str, Any]) -> Response:
    """Request cooperative cancellation of a background products sync."""
    try:
        request = CancelRequest.model_validate(body)
    except ValidationError as e:
        return _validation_error(e)

    token = state.tokens.get(request.operation_id)
    if token is None:
        return 404, {"success": False, "error": f"No cancellable operation {request.operation_id}"}
    token.cancel("requested")
    return 200, {"success": True, "operationId": request.operation_id, "status": "cancelling"}


HANDLERS: dict[str, Callable[[ServiceState, dict[str, Any]], Awaitable[Response]]] = {
    "sync-categories": handle_sync_categories,
    "sync-groups": handle_sync_groups,
    "sync-products": handle_sync_products,
    "match": handle_match,
    "sync-pricing": handle_sync_pricing,
    "throttle-stats": handle_throttle_stats,
    "cancel": handle_cancel,
}


async def dispatch(state: ServiceState, envelope: dict[str, Any]) -> Response:
    """Route `{"operation": name, ...body}` to its handler."""
    body = dict(envelope)
    operation = body.pop("operation", None)
    handler = HANDLERS.get(operation)
    if handler is None:
        return 400, {
            "success": False,
            "error": f"Unknown operation {operation!r}; expected one of {sorted(HANDLERS)}",
        }
    return await handler(state, body)
