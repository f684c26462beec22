from __future__ import annotations

from typing import Optional, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from sfdelta.core.errors import (
    ReceiptError,
    StaleValidationError,
    SubmissionError,
    ValidationNotPassedError,
)
from sfdelta.core.org.transport import CommandRequest, OrgOperation, OrgTransport
from sfdelta.core.package.assembler import DeployPackage
from sfdelta.core.runtime.context import WorkflowContext

from .models import JobResult, RunOutcome
from .polling import CancellationToken, PollSettings
from .receipts import ValidationReceipt, verify_receipt
from .runner import JobRunner


def check_validation(package: DeployPackage, validation: JobResult, org_alias: str) -> None:
    """
    Gate a deploy on a validation.

    Raises
    - ValidationNotPassedError: not a check-only job in a success status.
    - StaleValidationError: validated content or org differs from this deploy.
    """

    if not validation.check_only:
        raise ValidationNotPassedError(f"job {validation.job_id} is not a check-only validation")
    if not validation.status.is_success:
        raise ValidationNotPassedError(
            f"validation {validation.job_id} did not pass (status {validation.status.value})"
        )
    if validation.package_hash != package.content_hash:
        raise StaleValidationError(
            f"validation {validation.job_id} covers package {validation.package_hash}, "
            f"not {package.content_hash}"
        )
    if validation.org_alias is not None and validation.org_alias != org_alias:
        raise StaleValidationError(
            f"validation {validation.job_id} ran against '{validation.org_alias}', not '{org_alias}'"
        )


class DeployOrchestrator(JobRunner):
    """
    Persisting deploy of a previously validated DeployPackage.

    Contract
    - Refuses to submit unless check_validation passes (and, when a trusted
      public key is configured, a matching signed receipt verifies).
    - quick=True deploys the validated job by id instead of re-sending the
      package.
    - A Failed deploy is reported, never retried.
    """

    operation_name = "deploy"
    check_only = False

    def __init__(
        self,
        transport: OrgTransport,
        settings: Optional[PollSettings] = None,
        *,
        trusted_public_key: Optional[Ed25519PublicKey] = None,
        **kwargs,
    ) -> None:
        super().__init__(transport, settings, **kwargs)
        self._trusted_public_key = trusted_public_key

    async def deploy(
        self,
        package: DeployPackage,
        validation: Union[JobResult, RunOutcome],
        org_alias: str,
        *,
        cancel: Optional[CancellationToken] = None,
        quick: bool = False,
        receipt: Optional[ValidationReceipt] = None,
        context: Optional[WorkflowContext] = None,
    ) -> RunOutcome:
        if isinstance(validation, RunOutcome):
            if validation.job is None:
                raise ValidationNotPassedError(
                    f"validation {validation.job_id} ended {validation.state.value} without a result"
                )
            validation = validation.job

        check_validation(package, validation, org_alias)

        if self._trusted_public_key is not None:
            if receipt is None:
                raise ReceiptError(f"deploy of validation {validation.job_id} requires a signed receipt")
            verify_receipt(receipt, self._trusted_public_key, validation)

        if package.is_empty:
            raise SubmissionError(org_alias, OrgOperation.DEPLOY_START.value, "package is empty")

        if quick:
            request = CommandRequest(
                org_alias=org_alias,
                operation=OrgOperation.DEPLOY_QUICK,
                payload={"validation_job_id": validation.job_id, "package_hash": package.content_hash},
            )
        else:
            request = CommandRequest(
                org_alias=org_alias,
                operation=OrgOperation.DEPLOY_START,
                payload=self._payload(package),
            )
        return await self._run(request, package, cancel=cancel, context=context)
