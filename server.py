#!/usr/bin/env python3
"""
Warden — OAuth 2.0 authorization server (grant engine + token endpoint).

Loads server settings and registered clients from warden.yaml, signs
access tokens as HS256 JWTs with WARDEN_SIGNING_KEY, and serves the
token, device authorization, revocation and metadata endpoints over
HTTP. Authorizations are kept in memory.
"""

import argparse
import logging
import os
from pathlib import Path

from warden_config import load_config
from warden_grants import GrantEngine
from warden_http import DevicePollGuard, build_app
from warden_model import InMemoryAuthorizationStore
from warden_signer import JwtTokenSigner

logger = logging.getLogger("warden")


def create_app(config_path: Path | None = None, signing_key: str | None = None):
    """Assemble the ASGI app from config and environment."""
    settings, registry = load_config(config_path)
    key = signing_key or os.environ.get("WARDEN_SIGNING_KEY")
    if not key:
        # Fail closed: never mint unsigned or default-keyed tokens.
        raise SystemExit("WARDEN_SIGNING_KEY is not set")

    poll_guard = DevicePollGuard(settings.device_poll_interval)
    engine = GrantEngine(
        settings,
        registry,
        InMemoryAuthorizationStore(),
        JwtTokenSigner(key),
        poll_guard=poll_guard,
    )
    logger.info("warden: issuer=%s clients=%d", settings.issuer, len(registry))
    return build_app(engine, registry, settings, poll_guard)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to ~/.warden/audit.log
    _audit_log_path = Path.home() / ".warden" / "audit.log"
    _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("warden-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Warden OAuth 2.0 authorization server")
    parser.add_argument("--config", type=Path, default=None,
                        help="path to warden.yaml (default: $WARDEN_CONFIG or ./warden.yaml)")
    parser.add_argument("--port", type=int, default=9000)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    import uvicorn

    app = create_app(args.config)
    logger.info(f"warden: starting HTTP server on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")
