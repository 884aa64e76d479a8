"""Command line entry point for the FrameSync web API."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .audit import get_audit_logger
from .configuration import FrameSyncConfig, load_config
from .logging_setup import configure_logging

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    import uvicorn

logger = logging.getLogger(__name__)


def _import_uvicorn() -> "uvicorn":
    """Import :mod:`uvicorn` with a helpful error message when missing."""

    try:
        import uvicorn  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on runtime environment
        raise ModuleNotFoundError(
            "The 'uvicorn' package is required to run the FrameSync web server. "
            "Reinstall framesync or add uvicorn to your environment."
        ) from exc
    return uvicorn


def _apply_https_only_policy(config: FrameSyncConfig, *, ssl_enabled: bool) -> bool:
    """Ensure HTTPS-only sessions are only enforced when TLS is active."""

    auth = config.auth
    if auth is None or not auth.https_only:
        return False
    if ssl_enabled:
        return True
    logger.warning(
        "Authentication is configured for HTTPS-only sessions but no TLS certificate/key "
        "were supplied. Disabling HTTPS enforcement. Launch the server with "
        "--ssl-certfile/--ssl-keyfile or set 'auth.https_only' to false for development."
    )
    auth.https_only = False
    return False


def _uvicorn_log_level(debug: int) -> str:
    if debug >= 2:
        return "debug"
    if debug == 1:
        return "info"
    return "warning"


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Launch the FrameSync web API")
    parser.add_argument("--config", type=Path, required=True, help="Path to the FrameSync configuration file")
    parser.add_argument("--host", default="127.0.0.1", help="Host address for the web server")
    parser.add_argument("--port", type=int, default=8000, help="Port for the web server")
    parser.add_argument("--reload", action="store_true", help="Enable autoreload (development only)")
    parser.add_argument("--ssl-certfile", type=Path, help="Path to the TLS certificate file")
    parser.add_argument("--ssl-keyfile", type=Path, help="Path to the TLS private key file")
    args = parser.parse_args(argv)

    if bool(args.ssl_certfile) ^ bool(args.ssl_keyfile):
        parser.error("Both --ssl-certfile and --ssl-keyfile must be provided to enable HTTPS.")

    config = load_config(args.config)
    configure_logging(debug=config.debug)
    audit_logger = get_audit_logger(config.audit)
    if audit_logger:
        audit_logger.log(
            action="web_server.start",
            actor="system",
            details={"host": args.host, "port": args.port, "reload": args.reload},
        )

    ssl_certfile = str(args.ssl_certfile) if args.ssl_certfile else None
    ssl_keyfile = str(args.ssl_keyfile) if args.ssl_keyfile else None
    _apply_https_only_policy(config, ssl_enabled=bool(ssl_certfile and ssl_keyfile))

    from .web import create_app  # imported lazily to avoid heavy dependencies at import time

    app = create_app(config)
    uvicorn = _import_uvicorn()
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=_uvicorn_log_level(config.debug),
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


if __name__ == "__main__":
    main()
