"""Local status endpoint: snapshot store + FastAPI app."""

import ipaddress
import logging
import secrets
import threading
from typing import List, Optional, Sequence

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ai_session_meter.config.loader import ApiConfig

logger = logging.getLogger(__name__)

IpNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class SnapshotStore:
    """Holds the latest serialised status document.

    Publishing swaps a single immutable bytes reference under a lock, so
    readers never observe a partially written document.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Optional[bytes] = None

    def publish(self, data: bytes) -> None:
        with self._lock:
            self._data = data

    def get(self) -> Optional[bytes]:
        with self._lock:
            return self._data


def parse_networks(cidrs: Sequence[str]) -> List[IpNetwork]:
    return [ipaddress.ip_network(cidr, strict=False) for cidr in cidrs]


def is_allowed_ip(host: Optional[str], networks: Sequence[IpNetwork]) -> bool:
    """True if ``host`` parses as an IP inside any of ``networks``."""
    if not host:
        return False
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def extract_bearer_token(authorization: str) -> str:
    prefix = "Bearer "
    if len(authorization) > len(prefix) and authorization.startswith(prefix):
        return authorization[len(prefix):]
    return ""


def create_app(store: SnapshotStore, config: ApiConfig) -> FastAPI:
    """Create the status FastAPI application.

    Args:
        store: Source of the published status document
        config: Token and CIDR allowlist settings

    Returns:
        FastAPI app serving ``GET /api/status``
    """
    app = FastAPI(title="AI Session Meter", docs_url=None, redoc_url=None, openapi_url=None)
    networks = parse_networks(config.allow)

    if not networks and not config.token:
        logger.warning(
            "Status endpoint is unauthenticated and open to all hosts "
            "(consider setting an API token or allowlist)"
        )

    @app.get("/api/status")
    def get_status(request: Request) -> Response:
        # Allowlist first so unlisted hosts never learn that auth exists
        if networks:
            host = request.client.host if request.client else None
            if not is_allowed_ip(host, networks):
                return JSONResponse(status_code=403, content={"error": "forbidden"})

        if config.token:
            provided = extract_bearer_token(request.headers.get("Authorization", ""))
            if not secrets.compare_digest(provided.encode("utf-8"), config.token.encode("utf-8")):
                return JSONResponse(status_code=401, content={"error": "unauthorized"})

        data = store.get()
        if not data:
            return JSONResponse(status_code=503, content={"error": "no data"})

        return Response(
            content=data,
            media_type="application/json",
            headers={"Cache-Control": "max-age=5"},
        )

    return app


def start_server(app: FastAPI, config: ApiConfig) -> uvicorn.Server:
    """Serve ``app`` on a daemon thread; call ``should_exit = True`` to stop."""
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.bind, port=config.port, log_level="warning")
    )
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    logger.info("Status API listening on %s:%d", config.bind, config.port)
    return server
