"""Validation and deploy jobs.

Both follow the same protocol: submit once, poll until terminal, time out
or get cancelled. TimedOut and Aborted are inconclusive states, not failures.
"""

from .deploy import DeployOrchestrator, check_validation  # noqa: F401
from .models import JobResult, JobStatus, RunOutcome, RunState  # noqa: F401
from .polling import CancellationToken, PollSettings  # noqa: F401
from .receipts import ValidationReceipt, issue_receipt, verify_receipt  # noqa: F401
from .validation import ValidationRunner  # noqa: F401
