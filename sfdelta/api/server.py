from __future__ import annotations

import logging
import os
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from fastapi.responses import JSONResponse
from starlette.requests import Request

from sfdelta.api.auth import (
    CAP_DEPLOY,
    CAP_ORG_READ,
    CAP_PLAN,
    CAP_RUNTIME_READ,
    CAP_VALIDATE,
    Actor,
    anonymous_actor,
    authenticate,
    load_auth_config,
    requires_auth,
)
from sfdelta.api.middleware import AccessLogMiddleware, RequestIdMiddleware
from sfdelta.api.models import (
    ApiError,
    ContextDetailOut,
    ContextSummaryOut,
    DeployedSnapshotOut,
    DeployIn,
    PlanOut,
    RunOut,
    SnapshotOut,
    ValidateIn,
)
from sfdelta.api.rate_limit import READ_COST, SUBMIT_COST, TokenBucketRateLimiter
from sfdelta.core.config import WorkflowConfig, load_workflow_config
from sfdelta.core.errors import (
    ConfigurationError,
    OrgUnavailableError,
    PollTimeoutError,
    ReceiptError,
    SfDeltaError,
    StaleValidationError,
    SubmissionError,
    TransportError,
    ValidationNotPassedError,
)
from sfdelta.core.jobs.models import RunOutcome
from sfdelta.core.jobs.receipts import ValidationReceipt
from sfdelta.core.org.sf_cli import SfCliTransport
from sfdelta.core.org.transport import OrgTransport
from sfdelta.core.runtime.event_factory import event_to_record
from sfdelta.core.runtime.storage.sqlite_store import SQLiteWorkflowStore
from sfdelta.core.workflow import DeltaWorkflow, WorkflowPlan

log = logging.getLogger("sfdelta.api")


# First match wins; subclasses before their bases.
_ERROR_STATUS = (
    (PollTimeoutError, 504),
    (ValidationNotPassedError, 409),
    (StaleValidationError, 409),
    (ReceiptError, 409),
    (OrgUnavailableError, 502),
    (SubmissionError, 502),
    (TransportError, 502),
    (SfDeltaError, 400),
)


def status_for_error(exc: SfDeltaError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    db_path: Optional[Path] = None
    max_cached_plans: int = 256
    events_page: int = 200


def env_int(name: str, default: int) -> int:
    """Integer from the environment; a set but non-numeric value is a ConfigurationError."""

    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


class _PlanCache:
    """Bounded in-memory plan / validation cache keyed by context id."""

    def __init__(self, max_entries: int) -> None:
        self._max = max(1, int(max_entries))
        self._plans: "OrderedDict[str, WorkflowPlan]" = OrderedDict()
        self._validations: Dict[str, RunOutcome] = {}

    def put_plan(self, plan: WorkflowPlan) -> None:
        cid = plan.context.context_id
        self._plans[cid] = plan
        self._plans.move_to_end(cid)
        while len(self._plans) > self._max:
            old, _ = self._plans.popitem(last=False)
            self._validations.pop(old, None)

    def plan(self, context_id: str) -> WorkflowPlan:
        try:
            return self._plans[context_id]
        except KeyError:
            raise HTTPException(status_code=404, detail="plan_not_found") from None

    def put_validation(self, context_id: str, outcome: RunOutcome) -> None:
        self._validations[context_id] = outcome

    def validation(self, context_id: str) -> RunOutcome:
        try:
            return self._validations[context_id]
        except KeyError:
            raise HTTPException(status_code=404, detail="validation_not_found") from None


def _run_out(
    context_id: str, operation: str, outcome: RunOutcome, receipt: Optional[ValidationReceipt] = None
) -> RunOut:
    return RunOut(
        context_id=context_id,
        operation=operation,
        state=outcome.state.value,
        job_id=outcome.job_id,
        elapsed_seconds=round(outcome.elapsed_seconds, 3),
        detail=outcome.detail,
        job=outcome.job.to_dict() if outcome.job else None,
        receipt=receipt.to_dict() if receipt else None,
    )


def create_app(
    *,
    config: Optional[WorkflowConfig] = None,
    transport: Optional[OrgTransport] = None,
    db_path: Optional[str] = None,
) -> FastAPI:
    """Build the service around one DeltaWorkflow.

    Defaults: config from SFDELTA_CONFIG (or the current directory), the sf
    CLI transport, and the store at `db_path` or config.store_path. Without
    a store the read-only ledger routes answer 404.
    """

    if config is None:
        config = load_workflow_config(os.environ.get("SFDELTA_CONFIG") or None)
    if transport is None:
        transport = SfCliTransport(project_root=config.project_root, sf_bin=config.sf_bin, test_level=config.test_level)

    cfg = ServiceConfig(
        db_path=Path(db_path) if db_path else config.store_path,
        max_cached_plans=env_int("SFDELTA_API_MAX_PLANS", 256),
    )
    keys = load_auth_config()
    must_auth = requires_auth(keys)
    limiter = TokenBucketRateLimiter.from_env()

    log.setLevel(os.environ.get("SFDELTA_LOG_LEVEL", "INFO").upper())

    store: Optional[SQLiteWorkflowStore] = None
    if cfg.db_path is not None:
        store = SQLiteWorkflowStore(cfg.db_path)
        store.init_schema()

    workflow = DeltaWorkflow(config, transport, store)
    cache = _PlanCache(cfg.max_cached_plans)

    app = FastAPI(title="sfdelta API", version="0.1")
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(AccessLogMiddleware)
    app.state.workflow = workflow
    app.state.store = store
    app.state.rate_limiter = limiter

    @app.exception_handler(SfDeltaError)
    async def sfdelta_error_handler(request: Request, exc: SfDeltaError) -> JSONResponse:
        status = status_for_error(exc)
        log.warning(
            "api_error",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "error": type(exc).__name__,
                "status_code": status,
            },
        )
        body = ApiError(error=type(exc).__name__, detail=str(exc))
        return JSONResponse(status_code=status, content=body.model_dump())

    def caller(capability: str, cost: int = READ_COST) -> Callable[..., Actor]:
        """Dependency: authenticate, check `capability` for the path's org, then charge `cost` tokens."""

        def dependency(request: Request, x_sfdelta_api_key: Optional[str] = Header(default=None)) -> Actor:
            actor = authenticate(x_sfdelta_api_key, keys) if must_auth else anonymous_actor()
            if actor is None:
                raise HTTPException(status_code=401, detail="unauthorized")
            request.state.actor_id = actor.actor_id

            org_alias = request.path_params.get("org_alias")
            if not actor.can(capability, org_alias):
                raise HTTPException(status_code=403, detail="forbidden")

            bucket = actor.actor_id
            if not must_auth and request.client is not None:
                bucket = f"ip:{request.client.host}"
            decision = limiter.check(bucket, cost=cost)
            if not decision.allowed:
                raise HTTPException(
                    status_code=429,
                    detail="rate_limited",
                    headers={"Retry-After": str(decision.retry_after_seconds)},
                )
            return actor

        return dependency

    def ledger() -> SQLiteWorkflowStore:
        if store is None:
            raise HTTPException(status_code=404, detail="persistence_disabled")
        return store

    def cached_plan(context_id: str, org_alias: str) -> WorkflowPlan:
        plan = cache.plan(context_id)
        if plan.org_alias != org_alias:
            raise HTTPException(status_code=404, detail="plan_not_found")
        return plan

    def require_changes(plan: WorkflowPlan) -> None:
        if plan.package.is_empty:
            raise HTTPException(status_code=409, detail="empty_package")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "auth_required": must_auth,
            "persistence": store is not None,
            "reference_source": config.reference_snapshot_source.value,
            "api_version": config.api_version,
        }

    @app.post("/orgs/{org_alias}/plan", response_model=PlanOut)
    async def plan_endpoint(org_alias: str, actor: Actor = Depends(caller(CAP_PLAN))) -> PlanOut:
        """Scan the project, resolve the reference snapshot and assemble a package."""

        plan = await workflow.plan(org_alias)
        cache.put_plan(plan)
        return PlanOut(**plan.to_dict())

    @app.post("/orgs/{org_alias}/validate", response_model=RunOut)
    async def validate_endpoint(
        org_alias: str,
        body: Optional[ValidateIn] = None,
        actor: Actor = Depends(caller(CAP_VALIDATE, SUBMIT_COST)),
    ) -> RunOut:
        """Check-only deploy of a cached plan, or of a fresh plan when no context_id is sent.

        A plan with nothing to ship answers 409 before anything is submitted.
        """

        if body is not None and body.context_id:
            plan = cached_plan(body.context_id, org_alias)
        else:
            plan = await workflow.plan(org_alias)
            cache.put_plan(plan)

        require_changes(plan)
        outcome = await workflow.validate(plan)
        cache.put_validation(plan.context.context_id, outcome)
        receipt = workflow.issue_receipt(outcome, signer_id=actor.actor_id)
        return _run_out(plan.context.context_id, "validate", outcome, receipt)

    @app.post("/orgs/{org_alias}/deploy", response_model=RunOut)
    async def deploy_endpoint(
        org_alias: str,
        body: DeployIn,
        actor: Actor = Depends(caller(CAP_DEPLOY, SUBMIT_COST)),
    ) -> RunOut:
        """Deploy a planned package against a passed validation.

        validation_context_id pairs the plan with a validation recorded in
        another context; if that validation covered a different package the
        answer is 409.
        """

        plan = cached_plan(body.context_id, org_alias)
        require_changes(plan)
        validation = cache.validation(body.validation_context_id or body.context_id)
        receipt = ValidationReceipt.from_dict(body.receipt) if body.receipt else None

        outcome = await workflow.deploy(plan, validation, quick=body.quick, receipt=receipt)
        return _run_out(plan.context.context_id, "deploy", outcome)

    @app.get("/orgs/{org_alias}/snapshot", response_model=SnapshotOut)
    async def org_snapshot_endpoint(org_alias: str, actor: Actor = Depends(caller(CAP_ORG_READ))) -> SnapshotOut:
        snap = await workflow.fetch_org_snapshot(org_alias)
        return SnapshotOut(**snap.to_dict())

    @app.get("/orgs/{org_alias}/deployments", response_model=List[DeployedSnapshotOut])
    def deployments_endpoint(
        org_alias: str,
        limit: int = 20,
        actor: Actor = Depends(caller(CAP_RUNTIME_READ)),
    ) -> List[DeployedSnapshotOut]:
        """Deployed snapshots recorded for the org, newest first."""

        return [DeployedSnapshotOut(**row) for row in ledger().list_deployed_snapshots(org_alias, limit=limit)]

    @app.get("/workflows", response_model=List[ContextSummaryOut])
    def list_workflows_endpoint(
        response: Response,
        limit: int = 50,
        offset: int = 0,
        org_alias: Optional[str] = None,
        operation_name: Optional[str] = None,
        actor: Actor = Depends(caller(CAP_RUNTIME_READ)),
    ) -> List[ContextSummaryOut]:
        """Persisted workflow ledgers, newest first; X-Has-More / X-Next-Offset page through them."""

        page = max(1, min(500, limit))
        start = max(0, offset)
        rows = ledger().list_contexts(limit=page, offset=start, org_alias=org_alias, operation_name=operation_name)

        more = len(rows) == page
        response.headers["X-Has-More"] = str(more).lower()
        if more:
            response.headers["X-Next-Offset"] = str(start + page)
        return [ContextSummaryOut(**row) for row in rows]

    @app.get("/workflows/{context_id}", response_model=ContextDetailOut)
    def get_workflow_endpoint(
        context_id: str,
        events_limit: int = cfg.events_page,
        actor: Actor = Depends(caller(CAP_RUNTIME_READ)),
    ) -> ContextDetailOut:
        try:
            ctx = ledger().load_context(context_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="context_not_found") from None

        events = ctx.get_events()
        return ContextDetailOut(
            context=ContextSummaryOut(
                context_id=ctx.context_id,
                created_at=ctx.created_at.isoformat(),
                org_alias=ctx.org_alias,
                operation_name=ctx.operation_name,
                event_count=len(events),
            ),
            events=[event_to_record(ev) for ev in events[: max(0, events_limit)]],
            integrity_ok=ctx.verify_integrity(),
        )

    return app
