from __future__ import annotations

import secrets

from semconform.core.time import utc_compact_timestamp


def _suffix() -> str:
    return secrets.token_hex(4)


def new_run_id() -> str:
    return f"run_{utc_compact_timestamp()}_{_suffix()}"


def new_config_version() -> str:
    return f"hc_{utc_compact_timestamp()}_{_suffix()}"
