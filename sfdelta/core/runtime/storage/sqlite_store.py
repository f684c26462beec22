from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sfdelta.core.errors import MetadataFormatError
from sfdelta.core.metadata.models import Snapshot, SnapshotSource

from ..context import WorkflowContext
from ..event_factory import event_from_record, event_to_record

log = logging.getLogger("sfdelta.store")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS contexts (
    context_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    org_alias TEXT,
    operation_name TEXT
);

CREATE TABLE IF NOT EXISTS events (
    context_id TEXT NOT NULL REFERENCES contexts(context_id) ON DELETE CASCADE,
    idx INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    event_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    previous_event_hash TEXT,
    event_hash TEXT,
    PRIMARY KEY (context_id, idx)
);

CREATE TABLE IF NOT EXISTS deployed_snapshots (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    org_alias TEXT NOT NULL,
    snapshot_hash TEXT NOT NULL,
    deploy_job_id TEXT,
    stored_at TEXT NOT NULL,
    snapshot_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_deployed_org ON deployed_snapshots(org_alias, seq);
"""

_MAX_PAGE = 500


def _dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _page(limit: int) -> int:
    return max(1, min(_MAX_PAGE, int(limit)))


@dataclass(slots=True)
class SQLiteWorkflowStore:
    """SQLite persistence for workflow ledgers and deployed snapshots.

    `deployed_snapshots` backs `previousDeploy` reference resolution: one
    row per passed deploy, the highest `seq` per org wins. Everything read
    back is re-verified (event chains, snapshot hashes) before it is used.
    Nothing is encrypted at rest.
    """

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.db_path))
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        return con

    def init_schema(self) -> None:
        with closing(self.connect()) as con, con:
            con.executescript(_SCHEMA)

    # -- workflow ledgers ---------------------------------------------------

    def save_context(self, ctx: WorkflowContext, *, overwrite: bool = False) -> None:
        """Write the context header and its sealed events in chain order.

        Without `overwrite`, saving an existing context_id raises
        sqlite3.IntegrityError.
        """

        self.init_schema()
        records = [event_to_record(ev) for ev in ctx.get_events()]

        with closing(self.connect()) as con, con:
            if overwrite:
                con.execute("DELETE FROM contexts WHERE context_id = ?", (ctx.context_id,))
            con.execute(
                "INSERT INTO contexts(context_id, created_at, org_alias, operation_name) VALUES(?,?,?,?)",
                (ctx.context_id, ctx.created_at.isoformat(), ctx.org_alias, ctx.operation_name),
            )
            con.executemany(
                "INSERT INTO events(context_id, idx, event_type, payload_json, event_id, created_at,"
                " previous_event_hash, event_hash) VALUES(?,?,?,?,?,?,?,?)",
                [
                    (
                        ctx.context_id,
                        idx,
                        rec["event_type"],
                        _dumps(rec["payload"]),
                        rec["event_id"],
                        rec["created_at"],
                        rec["previous_event_hash"],
                        rec["event_hash"],
                    )
                    for idx, rec in enumerate(records)
                ],
            )
        log.debug("context_saved", extra={"context_id": ctx.context_id, "events": len(records)})

    def list_contexts(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        org_alias: Optional[str] = None,
        operation_name: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Context headers with event counts, newest first."""

        self.init_schema()
        filters = {"c.org_alias": org_alias, "c.operation_name": operation_name}
        clauses = [f"{col} = ?" for col, value in filters.items() if value]
        params: List[Any] = [str(value) for value in filters.values() if value]
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        query = (
            "SELECT c.context_id, c.created_at, c.org_alias, c.operation_name, COUNT(e.idx) AS event_count"
            " FROM contexts c LEFT JOIN events e ON e.context_id = c.context_id"
            f" {where_sql} GROUP BY c.context_id ORDER BY c.created_at DESC LIMIT ? OFFSET ?"
        )
        params += [_page(limit), max(0, int(offset))]

        with closing(self.connect()) as con:
            return [dict(row) for row in con.execute(query, params)]

    def load_context(self, context_id: str) -> WorkflowContext:
        """Load a ledger and re-verify its chain.

        Raises KeyError for an unknown id and ValueError when a stored event
        is malformed or the chain is broken.
        """

        self.init_schema()
        with closing(self.connect()) as con:
            head = con.execute("SELECT * FROM contexts WHERE context_id = ?", (context_id,)).fetchone()
            if head is None:
                raise KeyError(f"context_id not found: {context_id}")
            rows = con.execute("SELECT * FROM events WHERE context_id = ? ORDER BY idx", (context_id,)).fetchall()

        ctx = WorkflowContext(
            context_id=head["context_id"],
            created_at=datetime.fromisoformat(head["created_at"]),
            org_alias=head["org_alias"],
            operation_name=head["operation_name"],
        )
        for row in rows:
            record = dict(row)
            record["payload"] = json.loads(record.pop("payload_json"))
            ctx.append_sealed(event_from_record(record))

        broken = ctx.first_broken_index()
        if broken is not None:
            raise ValueError(f"event chain of {context_id} is broken at index {broken}")
        return ctx

    # -- deployed snapshots -------------------------------------------------

    def save_deployed_snapshot(
        self,
        org_alias: str,
        snapshot: Snapshot,
        *,
        deploy_job_id: Optional[str] = None,
    ) -> None:
        """Record `snapshot` as what is now deployed to `org_alias`."""

        self.init_schema()
        record = snapshot.relabel(SnapshotSource.PREVIOUS_DEPLOY).to_dict()
        record["org_alias"] = org_alias

        with closing(self.connect()) as con, con:
            con.execute(
                "INSERT INTO deployed_snapshots(org_alias, snapshot_hash, deploy_job_id, stored_at, snapshot_json)"
                " VALUES(?,?,?,?,?)",
                (
                    org_alias,
                    record["snapshot_hash"],
                    deploy_job_id,
                    datetime.now(timezone.utc).isoformat(),
                    _dumps(record),
                ),
            )
        log.info(
            "deployed_snapshot_saved",
            extra={"org_alias": org_alias, "snapshot_hash": record["snapshot_hash"], "job_id": deploy_job_id},
        )

    def latest_deployed_snapshot(self, org_alias: str) -> Optional[Snapshot]:
        """Newest deployed snapshot for the org, or None if it was never deployed to.

        Raises MetadataFormatError if the stored record does not match its hash.
        """

        self.init_schema()
        with closing(self.connect()) as con:
            row = con.execute(
                "SELECT snapshot_json, snapshot_hash FROM deployed_snapshots"
                " WHERE org_alias = ? ORDER BY seq DESC LIMIT 1",
                (org_alias,),
            ).fetchone()
        if row is None:
            return None

        try:
            snap = Snapshot.from_dict(json.loads(row["snapshot_json"]))
        except ValueError as e:
            raise MetadataFormatError(f"stored snapshot for '{org_alias}' is unreadable: {e}") from e
        if snap.snapshot_hash != row["snapshot_hash"]:
            raise MetadataFormatError(f"stored snapshot for '{org_alias}' does not match its hash")
        return snap

    def list_deployed_snapshots(self, org_alias: str, *, limit: int = 20) -> List[Dict[str, Any]]:
        self.init_schema()
        with closing(self.connect()) as con:
            rows = con.execute(
                "SELECT seq, snapshot_hash, deploy_job_id, stored_at FROM deployed_snapshots"
                " WHERE org_alias = ? ORDER BY seq DESC LIMIT ?",
                (org_alias, _page(limit)),
            )
            return [dict(row) for row in rows]
