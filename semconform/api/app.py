from __future__ import annotations

import threading
from typing import Any

try:  # FastAPI/Starlette are optional dependencies; keep import-time safe.
    from starlette.requests import Request
except Exception:  # pragma: no cover
    Request = Any  # type: ignore[misc,assignment]

from semconform.api.auth import AuthConfig, require_api_auth
from semconform.harness.harness import Harness


def create_app(*, harness: Harness, enabled: bool | None = None) -> Any:
    """
    FastAPI façade over the harness: list probes and trigger runs over HTTP.

    Runs are serialized; a second POST /v1/runs waits for the first to finish.
    `enabled` overrides interfaces.api_mode.enabled from the harness config.
    """
    try:
        from fastapi import Body, FastAPI, HTTPException
    except Exception as e:  # pragma: no cover
        raise RuntimeError("FastAPI is not installed. Install with: pip install -e .[api]") from e

    api_cfg = harness.config.api_mode()
    auth = AuthConfig(
        enabled=bool(api_cfg.get("enabled", False)) if enabled is None else bool(enabled),
        auth_mode=str(api_cfg.get("auth_mode", "local_trust")),
    )
    run_lock = threading.Lock()

    app = FastAPI(title="semconform API", version="0.1.0")

    def _enforce(request: Request) -> None:
        try:
            require_api_auth(auth, client_host=getattr(getattr(request, "client", None), "host", None), authorization=request.headers.get("authorization"))
        except PermissionError as e:
            raise HTTPException(status_code=403, detail=str(e))

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "probes": len(harness.registry)}

    @app.get("/v1/probes")
    def list_probes(request: Request) -> list[dict[str, Any]]:
        _enforce(request)
        return [p.to_json_obj() for p in harness.registry.list_probes()]

    @app.get("/v1/probes/{name}")
    def get_probe(request: Request, name: str) -> dict[str, Any]:
        _enforce(request)
        try:
            probe = harness.registry.get(name)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=e.args[0])
        return {
            **probe.to_json_obj(),
            "expected_output": probe.expected_bytes().decode("utf-8", errors="backslashreplace"),
            "source_text": probe.source_text(),
        }

    @app.post("/v1/runs")
    def start_run(request: Request, body: dict[str, Any] = Body(default={})) -> dict[str, Any]:
        _enforce(request)
        filters = body.get("filters") or []
        if not isinstance(filters, list) or not all(isinstance(f, str) for f in filters):
            raise HTTPException(status_code=400, detail="filters must be a list of strings")
        concurrency = body.get("concurrency")
        if concurrency is not None and (isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1):
            raise HTTPException(status_code=400, detail="concurrency must be an integer >= 1")
        timeout = body.get("timeout_seconds")
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            raise HTTPException(status_code=400, detail="timeout_seconds must be a positive number")

        with run_lock:
            try:
                report = harness.run(
                    filters,
                    concurrency=concurrency,
                    timeout_override_seconds=float(timeout) if timeout is not None else None,
                    dry_run=bool(body.get("dry_run", False)),
                )
            except ValueError as e:
                # EmptySelection, or InvalidHarnessConfig from the engine section.
                raise HTTPException(status_code=400, detail=str(e))
        return report.to_json_obj()

    return app
