from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sfdelta.core.errors import ConfigurationError, TransientTransportError, TransportError
from sfdelta.core.metadata.inventory import InventoryReader
from sfdelta.core.metadata.models import SnapshotSource
from sfdelta.core.metadata.types import BUNDLE_FOLDERS, known_type_names

from .transport import CommandRequest, CommandResponse, OrgOperation

log = logging.getLogger("sfdelta.transport")

# Error names / fragments reported by the sf CLI that are worth a retry.
TRANSIENT_ERROR_NAMES = frozenset(
    {
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "ENOTFOUND",
        "EAI_AGAIN",
        "RequestTimeout",
        "ServerUnavailable",
        "INVALID_SESSION_ID",
        "ERROR_HTTP_502",
        "ERROR_HTTP_503",
        "ERROR_HTTP_504",
    }
)

_PACKAGE_XML = "package.xml"
_DESTRUCTIVE_XML = "destructiveChangesPost.xml"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _is_transient(name: Optional[str], message: Optional[str]) -> bool:
    if name and name in TRANSIENT_ERROR_NAMES:
        return True
    text = message or ""
    return any(token in text for token in TRANSIENT_ERROR_NAMES)


def parse_cli_json(stdout: str, returncode: int) -> CommandResponse:
    """Turn `sf ... --json` stdout into a CommandResponse.

    The CLI prints {"status": 0, "result": {...}} on success and
    {"status": 1, "name": ..., "message": ..., "result"?: {...}} on failure.
    Deploy failures still carry a result describing the job, so `output` is
    kept whenever one is present.
    """

    text = (stdout or "").strip()
    if not text:
        return CommandResponse(exit_status=returncode or 1, error_detail="sf produced no output")

    try:
        data = json.loads(text)
    except ValueError:
        return CommandResponse(exit_status=returncode or 1, error_detail="sf produced invalid JSON")

    if not isinstance(data, dict):
        return CommandResponse(exit_status=returncode or 1, error_detail="sf produced a non-object payload")

    status = data.get("status", returncode)
    try:
        exit_status = int(status)
    except (TypeError, ValueError):
        exit_status = returncode or 1

    result = data.get("result")
    if result is None:
        result = data.get("data")
    output = result if isinstance(result, dict) else None

    if exit_status == 0:
        return CommandResponse(exit_status=0, output=output)

    name = data.get("name")
    message = data.get("message")
    detail = f"{name}: {message}" if name and message else str(message or name or "sf command failed")
    return CommandResponse(
        exit_status=exit_status,
        output=output,
        error_detail=detail,
        transient=_is_transient(name if isinstance(name, str) else None, message if isinstance(message, str) else None),
    )


class SfCliTransport:
    """
    OrgTransport backed by the Salesforce CLI (`sf`).

    Every command runs with --json in a subprocess; package manifests are
    staged in a private temp dir that lives only for the submit call.

    Security notes:
    - Arguments are passed as a list (no shell).
    - Credentials never pass through sfdelta; `sf` resolves the org alias.
    """

    def __init__(
        self,
        *,
        project_root: str | Path,
        sf_bin: Optional[str] = None,
        command_timeout_seconds: Optional[float] = None,
        test_level: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.sf_bin = sf_bin or os.environ.get("SFDELTA_SF_BIN", "sf")
        if command_timeout_seconds is None:
            command_timeout_seconds = _env_float("SFDELTA_SF_TIMEOUT_SEC", 600.0)
        self.command_timeout_seconds = float(command_timeout_seconds)
        self.test_level = test_level
        self._env = dict(env) if env is not None else None

    async def execute(self, request: CommandRequest) -> CommandResponse:
        op = request.operation
        if op == OrgOperation.RETRIEVE_MANIFEST:
            return await self._retrieve_manifest(request)
        if op in (OrgOperation.DEPLOY_VALIDATE, OrgOperation.DEPLOY_START):
            return await self._deploy(request)
        if op == OrgOperation.DEPLOY_QUICK:
            job_id = str(request.payload.get("validation_job_id") or "")
            if not job_id:
                raise TransportError("deploy_quick requires validation_job_id")
            return await self._run(
                ["project", "deploy", "quick", "--job-id", job_id, "--target-org", request.org_alias, "--async"]
            )
        if op == OrgOperation.DEPLOY_REPORT:
            job_id = str(request.payload.get("job_id") or "")
            if not job_id:
                raise TransportError("deploy_report requires job_id")
            return await self._run(
                ["project", "deploy", "report", "--job-id", job_id, "--target-org", request.org_alias]
            )
        raise TransportError(f"unsupported operation: {op}")

    async def _deploy(self, request: CommandRequest) -> CommandResponse:
        payload = request.payload
        package_xml = payload.get("package_xml")
        if not isinstance(package_xml, str) or not package_xml.strip():
            raise TransportError("deploy payload missing package_xml")

        verb = "validate" if request.operation == OrgOperation.DEPLOY_VALIDATE else "start"
        with tempfile.TemporaryDirectory(prefix="sfdelta-") as tmp:
            stage = Path(tmp)
            (stage / _PACKAGE_XML).write_text(package_xml, encoding="utf-8")
            args = [
                "project",
                "deploy",
                verb,
                "--manifest",
                str(stage / _PACKAGE_XML),
                "--target-org",
                request.org_alias,
                "--async",
            ]
            destructive = payload.get("destructive_xml")
            if isinstance(destructive, str) and destructive.strip():
                (stage / _DESTRUCTIVE_XML).write_text(destructive, encoding="utf-8")
                args += ["--post-destructive-changes", str(stage / _DESTRUCTIVE_XML)]
            test_level = payload.get("test_level") or self.test_level
            if test_level:
                args += ["--test-level", str(test_level)]
            return await self._run(args)

    async def _retrieve_manifest(self, request: CommandRequest) -> CommandResponse:
        types: Sequence[str] = request.payload.get("metadata_types") or sorted(
            set(known_type_names()) | set(BUNDLE_FOLDERS.values())
        )
        with tempfile.TemporaryDirectory(prefix="sfdelta-retrieve-") as tmp:
            args = ["project", "retrieve", "start", "--target-org", request.org_alias, "--output-dir", tmp]
            for t in types:
                args += ["--metadata", str(t)]
            resp = await self._run(args)
            if not resp.ok:
                return resp

            reader = InventoryReader(tmp, source=SnapshotSource.ORG)
            snap = await asyncio.to_thread(reader.scan, org_alias=request.org_alias)
            components: List[Dict[str, Any]] = [
                {
                    "type": c.type,
                    "fullName": c.api_name,
                    "contentHash": c.content_hash,
                    "lastModifiedDate": c.last_modified.isoformat() if c.last_modified else None,
                }
                for c in snap.components.values()
            ]
        return CommandResponse(exit_status=0, output={"components": components})

    async def _run(self, args: List[str]) -> CommandResponse:
        cmd = [self.sf_bin, *args, "--json"]
        env = dict(os.environ) if self._env is None else dict(self._env)
        env.setdefault("SF_DISABLE_COLORS", "true")
        env.setdefault("SF_AUTOUPDATE_DISABLE", "true")

        log.debug("sf_command", extra={"command": " ".join(args[:3])})
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.project_root),
                env=env,
            )
        except FileNotFoundError as e:
            raise TransportError(f"sf CLI not found: {self.sf_bin}") from e

        try:
            stdout, _stderr = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout_seconds)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TransientTransportError(
                f"sf {' '.join(args[:3])} exceeded {self.command_timeout_seconds}s"
            ) from e
        except asyncio.CancelledError:
            proc.kill()
            raise

        return parse_cli_json(stdout.decode("utf-8", errors="replace"), proc.returncode or 0)
