from __future__ import annotations

from semconform.api.app import create_app
from semconform.harness.harness import Harness


def run_api_server(*, harness: Harness, host: str, port: int) -> None:
    try:
        import uvicorn
    except Exception as e:  # pragma: no cover
        raise RuntimeError("uvicorn is not installed. Install with: pip install -e .[api]") from e

    # Starting the server is the opt-in; auth_mode still comes from config.
    app = create_app(harness=harness, enabled=True)
    uvicorn.run(app, host=host, port=int(port), log_level="info")
