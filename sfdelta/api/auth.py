from __future__ import annotations

import hmac
import logging
import os
from dataclasses import dataclass
from typing import Dict, FrozenSet, Mapping, Optional

log = logging.getLogger("sfdelta.api")

CAP_PLAN = "delta:plan"
CAP_VALIDATE = "delta:validate"
CAP_DEPLOY = "delta:deploy"
CAP_ORG_READ = "org:read"
CAP_RUNTIME_READ = "runtime:read"

ALL_CAPABILITIES = (CAP_PLAN, CAP_VALIDATE, CAP_DEPLOY, CAP_ORG_READ, CAP_RUNTIME_READ)

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller.

    A grant is either a bare capability (`delta:deploy`, valid for every
    org) or one scoped to a single org alias (`delta:deploy@uat`). `*`
    grants everything. Grants come only from the server-side key mapping.
    """

    actor_id: str
    grants: FrozenSet[str]

    def can(self, capability: str, org_alias: Optional[str] = None) -> bool:
        if "*" in self.grants or capability in self.grants:
            return True
        return org_alias is not None and f"{capability}@{org_alias}" in self.grants

    @property
    def capabilities(self) -> list:
        return sorted(self.grants)


def _known_grant(grant: str) -> bool:
    return grant == "*" or grant.split("@", 1)[0] in ALL_CAPABILITIES


def parse_api_keys(raw: str) -> Dict[str, Actor]:
    """Parse SFDELTA_API_KEYS into an API key -> Actor mapping.

    Entries are separated by `;`, each `<key>:<actor>:<grant,grant,...>`::

        SFDELTA_API_KEYS="k1:ci:delta:plan,delta:validate;k2:release:*"
        SFDELTA_API_KEYS="k3:uat-bot:delta:plan,delta:validate@uat,delta:deploy@uat"

    Malformed entries and unknown capabilities are skipped with a warning.
    """

    out: Dict[str, Actor] = {}
    for n, entry in enumerate((raw or "").split(";")):
        entry = entry.strip()
        if not entry:
            continue
        key, sep1, rest = entry.partition(":")
        actor_id, sep2, grants_raw = rest.partition(":")
        key, actor_id = key.strip(), actor_id.strip()
        if not (sep1 and sep2 and key and actor_id):
            log.warning("api_key_entry_malformed", extra={"entry_index": n})
            continue

        grants = set()
        for grant in (g.strip() for g in grants_raw.split(",")):
            if not grant:
                continue
            if not _known_grant(grant):
                log.warning("api_key_unknown_capability", extra={"actor_id": actor_id, "capability": grant})
                continue
            grants.add(grant)
        out[key] = Actor(actor_id=actor_id, grants=frozenset(grants))
    return out


def load_auth_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, Actor]:
    env = os.environ if env is None else env
    return parse_api_keys(env.get("SFDELTA_API_KEYS", ""))


def requires_auth(mapping: Dict[str, Actor], env: Optional[Mapping[str, str]] = None) -> bool:
    """Auth is required when any key is configured or SFDELTA_REQUIRE_AUTH is truthy."""

    env = os.environ if env is None else env
    return bool(mapping) or env.get("SFDELTA_REQUIRE_AUTH", "").strip().lower() in _TRUTHY


def anonymous_actor() -> Actor:
    return Actor(actor_id="anonymous", grants=frozenset({"*"}))


def authenticate(api_key: Optional[str], mapping: Dict[str, Actor]) -> Optional[Actor]:
    """Resolve an API key; every configured key is compared in constant time."""

    if not api_key:
        return None

    found: Optional[Actor] = None
    presented = api_key.encode("utf-8")
    for key, actor in mapping.items():
        if hmac.compare_digest(key.encode("utf-8"), presented):
            found = actor
    return found
