from __future__ import annotations

from typing import Optional

from sfdelta.core.errors import SubmissionError
from sfdelta.core.org.transport import CommandRequest, OrgOperation
from sfdelta.core.package.assembler import DeployPackage
from sfdelta.core.runtime.context import WorkflowContext

from .models import RunOutcome
from .polling import CancellationToken
from .runner import JobRunner


class ValidationRunner(JobRunner):
    """
    Check-only deploy of a DeployPackage.

    The resulting JobResult is bound to the package content hash and org
    alias; DeployOrchestrator only accepts it for that same package.
    """

    operation_name = "validate"
    check_only = True

    async def run(
        self,
        package: DeployPackage,
        org_alias: str,
        *,
        cancel: Optional[CancellationToken] = None,
        context: Optional[WorkflowContext] = None,
    ) -> RunOutcome:
        if package.is_empty:
            raise SubmissionError(org_alias, OrgOperation.DEPLOY_VALIDATE.value, "package is empty")

        request = CommandRequest(
            org_alias=org_alias,
            operation=OrgOperation.DEPLOY_VALIDATE,
            payload=self._payload(package),
        )
        return await self._run(request, package, cancel=cancel, context=context)
