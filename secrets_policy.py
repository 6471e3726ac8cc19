"""secrets_policy.py

Whether ChatRelay may write generated secrets (secret_key, jwt_secret) back
into server_config.json.

Disable persistence (keep secrets in env / a secret manager):
  export CHATRELAY_PERSIST_SECRETS=0
"""

from __future__ import annotations

import os
from typing import Any, Dict


def env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return default


def persist_secrets_enabled() -> bool:
    return env_bool("CHATRELAY_PERSIST_SECRETS", True)


SECRET_SETTING_KEYS = {
    "secret_key",
    "jwt_secret",
    "jwt_secret_key",
}


def scrub_secrets_for_persist(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of settings with secret keys removed if persistence is disabled."""
    out = dict(settings)
    if persist_secrets_enabled():
        return out
    for k in SECRET_SETTING_KEYS:
        out.pop(k, None)
    return out
