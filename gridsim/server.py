"""
GridSim - gridsim/server.py
---------------------------
FastAPI application: wires the track and race routers, the {code, result}
error envelope, CORS, and the shared car-service HTTP client.

Run
    python -m uvicorn gridsim.server:app --host 127.0.0.1 --port 3389
    # or, using config/config.yaml for host/port:
    gridsim

Startup
1) ensure_schema() on the configured SQLite path (idempotent).
2) One httpx.AsyncClient shared by every request, closed on shutdown.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .car_client import CarServiceClient
from .config_loader import get_car_service_cfg, get_db_path, get_log_level, get_server_bind
from .db_schema import ensure_schema
from .errors import envelope, install_error_handlers
from .races import router as races_router
from .tracks import router as tracks_router

log = logging.getLogger("gridsim")
log.setLevel(get_log_level())


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    db_path = get_db_path()
    ensure_schema(db_path, recreate=False)
    log.info("database ready at %s", db_path)

    cfg = get_car_service_cfg()
    app.state.car_client = CarServiceClient.from_config(cfg["timeout_s"], cfg["verify_tls"])
    try:
        yield
    finally:
        await app.state.car_client.aclose()


# ------------------------------------------------------------
# FastAPI app bootstrap
# ------------------------------------------------------------
app = FastAPI(title="GridSim Backend", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-KEY"],
)

install_error_handlers(app)

app.include_router(tracks_router)
app.include_router(races_router)


@app.get("/health")
def health() -> Dict[str, Any]:
    return envelope({"ok": True})


def main() -> None:
    import uvicorn

    host, port = get_server_bind()
    uvicorn.run("gridsim.server:app", host=host, port=port, log_level=get_log_level().lower())


if __name__ == "__main__":
    main()
