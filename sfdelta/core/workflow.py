from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from sfdelta.core.config import ReferenceSource, WorkflowConfig
from sfdelta.core.delta.engine import ChangeSet, diff
from sfdelta.core.jobs.deploy import DeployOrchestrator
from sfdelta.core.jobs.models import RunOutcome
from sfdelta.core.jobs.polling import CancellationToken, Clock, Sleeper
from sfdelta.core.jobs.receipts import (
    ValidationReceipt,
    issue_receipt,
    load_private_key_pem,
    load_public_key_pem,
)
from sfdelta.core.jobs.validation import ValidationRunner
from sfdelta.core.metadata.inventory import InventoryReader
from sfdelta.core.metadata.models import Snapshot, SnapshotSource
from sfdelta.core.org.fetcher import OrgSnapshotFetcher
from sfdelta.core.org.transport import OrgTransport
from sfdelta.core.package.assembler import DeployPackage, assemble
from sfdelta.core.runtime.context import WorkflowContext
from sfdelta.core.runtime.events import (
    ChangeSetComputedEvent,
    PackageAssembledEvent,
    ReferenceUpdatedEvent,
    SnapshotCapturedEvent,
)
from sfdelta.core.runtime.storage.sqlite_store import SQLiteWorkflowStore

log = logging.getLogger("sfdelta.workflow")


@dataclass(frozen=True)
class WorkflowPlan:
    """Everything computed before anything is submitted to the org."""

    org_alias: str
    local: Snapshot
    reference: Snapshot
    change_set: ChangeSet
    package: DeployPackage
    context: WorkflowContext

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_alias": self.org_alias,
            "context_id": self.context.context_id,
            "local_snapshot_hash": self.local.snapshot_hash,
            "reference_source": self.reference.source.value,
            "reference_snapshot_hash": self.reference.snapshot_hash,
            "change_set": self.change_set.to_dict(),
            "package": self.package.to_dict(),
        }


@dataclass(frozen=True)
class WorkflowResult:
    plan: WorkflowPlan
    validation: Optional[RunOutcome] = None
    deployment: Optional[RunOutcome] = None
    receipt: Optional[ValidationReceipt] = None

    @property
    def context_id(self) -> str:
        return self.plan.context.context_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "validation": self.validation.to_dict() if self.validation else None,
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "integrity_ok": self.plan.context.verify_integrity(),
        }


class DeltaWorkflow:
    """
    Inventory -> reference snapshot -> diff -> package -> validate -> deploy.

    Invariants
    - Steps run strictly in sequence for one org; nothing is deployed
      without a passed validation of the same package.
    - Every step is recorded in the plan's WorkflowContext, which is
      persisted to the store (if any) after each org-facing step.
    - Only a passed deploy replaces the org's stored previousDeploy reference.
    - Workflows for different orgs are independent; no lock is held across
      an await.
    """

    def __init__(
        self,
        config: WorkflowConfig,
        transport: OrgTransport,
        store: Optional[SQLiteWorkflowStore] = None,
        *,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
        retry_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._store = store
        self._order = config.dependency_order()
        self._reader = InventoryReader(config.project_root)
        self._fetcher = OrgSnapshotFetcher(transport, config.retry, sleep=retry_sleep)

        runner_kwargs = dict(
            api_version=config.api_version,
            test_level=config.test_level,
            clock=clock,
            sleep=sleep,
        )
        self._validator = ValidationRunner(transport, config.poll_settings(), **runner_kwargs)

        self._private_key = load_private_key_pem(config.receipt_private_key) if config.receipt_private_key else None
        public_key = load_public_key_pem(config.receipt_public_key) if config.receipt_public_key else None
        self._deployer = DeployOrchestrator(
            transport,
            config.poll_settings(),
            trusted_public_key=public_key,
            **runner_kwargs,
        )

    @property
    def store(self) -> Optional[SQLiteWorkflowStore]:
        return self._store

    def new_context(self, org_alias: str, operation: str = "run") -> WorkflowContext:
        return WorkflowContext(
            context_id=f"wf-{uuid4().hex}",
            org_alias=org_alias,
            operation_name=f"workflow:{operation}",
        )

    def _persist(self, context: WorkflowContext) -> None:
        if self._store is not None:
            self._store.save_context(context, overwrite=True)

    async def fetch_org_snapshot(self, org_alias: str) -> Snapshot:
        return await self._fetcher.fetch(org_alias)

    async def reference_snapshot(self, org_alias: str) -> Snapshot:
        if self.config.reference_snapshot_source == ReferenceSource.ORG_CURRENT:
            return await self._fetcher.fetch(org_alias)

        stored = self._store.latest_deployed_snapshot(org_alias) if self._store is not None else None
        if stored is None:
            log.info("no_previous_deploy", extra={"org_alias": org_alias})
            return Snapshot.empty(SnapshotSource.PREVIOUS_DEPLOY, org_alias=org_alias)
        return stored

    async def plan(self, org_alias: str, *, context: Optional[WorkflowContext] = None) -> WorkflowPlan:
        context = context or self.new_context(org_alias, "plan")

        local = await asyncio.to_thread(self._reader.scan)
        context.emit_event(
            SnapshotCapturedEvent(
                source=local.source.value,
                snapshot_hash=local.snapshot_hash,
                component_count=len(local),
            )
        )

        reference = await self.reference_snapshot(org_alias)
        context.emit_event(
            SnapshotCapturedEvent(
                source=reference.source.value,
                snapshot_hash=reference.snapshot_hash,
                component_count=len(reference),
                org_alias=org_alias,
            )
        )

        change_set = diff(reference, local)
        context.emit_event(
            ChangeSetComputedEvent(
                reference_hash=reference.snapshot_hash,
                current_hash=local.snapshot_hash,
                added=len(change_set.added),
                modified=len(change_set.modified),
                deleted=len(change_set.deleted),
            )
        )

        package = assemble(change_set, local, order=self._order)
        context.emit_event(
            PackageAssembledEvent(
                package_hash=package.content_hash,
                upserts=len(package.upserts()),
                deletions=len(package.deletions()),
                manifest=[f"{e.action.value}:{e.component_id.key}" for e in package.manifest],
            )
        )

        log.info(
            "workflow_planned",
            extra={
                "org_alias": org_alias,
                "context_id": context.context_id,
                "changes": len(change_set),
                "package_hash": package.content_hash,
            },
        )
        self._persist(context)
        return WorkflowPlan(org_alias, local, reference, change_set, package, context)

    async def validate(self, plan: WorkflowPlan, *, cancel: Optional[CancellationToken] = None) -> RunOutcome:
        try:
            return await self._validator.run(plan.package, plan.org_alias, cancel=cancel, context=plan.context)
        finally:
            self._persist(plan.context)

    def issue_receipt(self, outcome: RunOutcome, *, signer_id: Optional[str] = None) -> Optional[ValidationReceipt]:
        """Sign a receipt for a passed validation when a private key is configured."""

        if self._private_key is None or not outcome.passed or outcome.job is None:
            return None
        return issue_receipt(outcome.job, self._private_key, signer_id=signer_id)

    async def deploy(
        self,
        plan: WorkflowPlan,
        validation: RunOutcome,
        *,
        cancel: Optional[CancellationToken] = None,
        quick: bool = False,
        receipt: Optional[ValidationReceipt] = None,
    ) -> RunOutcome:
        try:
            outcome = await self._deployer.deploy(
                plan.package,
                validation,
                plan.org_alias,
                cancel=cancel,
                quick=quick,
                receipt=receipt,
                context=plan.context,
            )
            if outcome.passed and self._store is not None:
                self._store.save_deployed_snapshot(plan.org_alias, plan.local, deploy_job_id=outcome.job_id)
                plan.context.emit_event(
                    ReferenceUpdatedEvent(
                        org_alias=plan.org_alias,
                        snapshot_hash=plan.local.snapshot_hash,
                        metadata={"deploy_job_id": outcome.job_id},
                    )
                )
            return outcome
        finally:
            self._persist(plan.context)

    async def run(
        self,
        org_alias: str,
        *,
        deploy: bool = True,
        quick: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> WorkflowResult:
        """Plan, validate and (optionally) deploy; stops at the first non-passing step."""

        plan = await self.plan(org_alias, context=self.new_context(org_alias, "run"))
        if plan.package.is_empty:
            log.info("workflow_nothing_to_deploy", extra={"org_alias": org_alias})
            return WorkflowResult(plan)

        validation = await self.validate(plan, cancel=cancel)
        receipt = self.issue_receipt(validation)
        if not deploy or not validation.passed:
            return WorkflowResult(plan, validation=validation, receipt=receipt)

        deployment = await self.deploy(plan, validation, cancel=cancel, quick=quick, receipt=receipt)
        return WorkflowResult(plan, validation=validation, deployment=deployment, receipt=receipt)
