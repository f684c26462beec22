from __future__ import annotations

from typing import Any, Optional, Sequence


class SfDeltaError(Exception):
    """
    Base exception for all sfdelta failures.
    """

    pass


class ConfigurationError(SfDeltaError):
    """
    Raised when workflow configuration is missing or invalid.
    """

    pass


class InventoryReadError(SfDeltaError, OSError):
    """
    Raised when the project source tree cannot be read.
    """

    pass


class MetadataFormatError(SfDeltaError):
    """
    Raised when a metadata file (or a transport payload describing one)
    cannot be attributed to a type and api name.
    """

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(f"{message}: {path}" if path else message)
        self.path = path


class CyclicDependencyError(SfDeltaError):
    """
    Raised when a metadata-type dependency table is not a DAG.

    This is a configuration defect, never a runtime condition to recover from.
    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__("dependency order table has a cycle: " + " -> ".join(self.cycle))


class TransportError(SfDeltaError):
    """
    Raised by an org transport when a command could not be executed.
    """

    pass


class TransientTransportError(TransportError):
    """
    Raised by an org transport for failures worth retrying (network, session).
    """

    pass


class OrgUnavailableError(SfDeltaError):
    """
    Raised when an org cannot serve a request after the retry budget is spent.
    """

    def __init__(self, org_alias: str, detail: str, *, attempts: int = 0) -> None:
        super().__init__(f"org '{org_alias}' unavailable after {attempts} attempt(s): {detail}")
        self.org_alias = org_alias
        self.detail = detail
        self.attempts = attempts


class SubmissionError(SfDeltaError):
    """
    Raised when a validation or deploy job is rejected at submission.

    Submissions are never retried.
    """

    def __init__(self, org_alias: str, operation: str, detail: str) -> None:
        super().__init__(f"{operation} rejected by org '{org_alias}': {detail}")
        self.org_alias = org_alias
        self.operation = operation
        self.detail = detail


class PollTimeoutError(SfDeltaError, TimeoutError):
    """
    Raised by the poll loop when a job outlives its configured wait.

    Inconclusive: the job may still complete org-side.
    """

    def __init__(
        self,
        job_id: str,
        timeout_seconds: float,
        *,
        elapsed_seconds: Optional[float] = None,
        last_job: Any = None,
    ) -> None:
        super().__init__(f"job {job_id} not terminal after {timeout_seconds}s")
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = timeout_seconds if elapsed_seconds is None else elapsed_seconds
        self.last_job = last_job


class StaleValidationError(SfDeltaError):
    """
    Raised when a deploy is attempted with a validation that does not match
    the package content (or target org).
    """

    pass


class ValidationNotPassedError(SfDeltaError):
    """
    Raised when a deploy is attempted with a validation that did not pass.
    """

    pass


class ReceiptError(SfDeltaError):
    """
    Raised when a signed validation receipt is missing or does not verify.
    """

    pass
