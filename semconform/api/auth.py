from __future__ import annotations

import hmac
import os
from dataclasses import dataclass

TOKEN_ENV_VAR = "SEMCONFORM_API_TOKEN"


@dataclass(frozen=True)
class AuthConfig:
    enabled: bool
    auth_mode: str  # none|local_trust|token


def require_api_auth(auth: AuthConfig, client_host: str | None, authorization: str | None) -> None:
    """
    Raise PermissionError unless the request may use the API.

    The token is never stored in the harness config; token mode reads the
    expected bearer token from the server's environment.
    """
    if not auth.enabled:
        raise PermissionError("api_mode is disabled")

    mode = (auth.auth_mode or "none").strip()
    if mode == "none":
        return

    if mode == "local_trust":
        host = (client_host or "").strip()
        if host in {"127.0.0.1", "::1"}:
            return
        raise PermissionError("local_trust requires localhost client")

    if mode == "token":
        expected = os.environ.get(TOKEN_ENV_VAR)
        if not expected:
            raise PermissionError(f"token auth enabled but {TOKEN_ENV_VAR} is not set on server")
        hdr = (authorization or "").strip()
        if hdr.lower().startswith("bearer ") and hmac.compare_digest(hdr[7:].strip(), expected):
            return
        raise PermissionError("invalid bearer token")

    raise PermissionError(f"unknown auth_mode: {mode}")
