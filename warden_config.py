"""
warden_config.py — typed configuration and the client registry.

Server and client settings are explicit dataclasses with documented
defaults, validated once when they are built. Registered clients are
loaded from the ``clients`` section of warden.yaml; the ``server``
section becomes ServerSettings. WARDEN_ISSUER_URL overrides the issuer.

Example warden.yaml::

    server:
      issuer: https://auth.example.com
    clients:
      billing-service:
        client_secret_hash: 5e884898da28...   # sha256 hex
        authentication_methods: [client_secret_basic]
        grant_types: [client_credentials]
        scopes: [invoices.read, invoices.write]
"""

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

logger = logging.getLogger("warden-config")

# RFC 6749 §4.1.2: authorization codes should live ten minutes at most.
MAX_CODE_TTL = 600


class GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"
    REFRESH_TOKEN = "refresh_token"
    DEVICE_CODE = "urn:ietf:params:oauth:grant-type:device_code"


class ClientAuthenticationMethod(str, Enum):
    CLIENT_SECRET_BASIC = "client_secret_basic"
    CLIENT_SECRET_POST = "client_secret_post"
    NONE = "none"


_ISSUER_URL = TypeAdapter(AnyHttpUrl)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerSettings:
    """Authorization server settings.

    ``issuer`` has no default: it goes into every token's ``iss`` claim
    and into the metadata document, so it has to be configured.
    """

    issuer: str
    authorization_endpoint: str = "/oauth2/authorize"
    device_authorization_endpoint: str = "/oauth2/device_authorization"
    device_verification_endpoint: str = "/oauth2/device_verification"
    token_endpoint: str = "/oauth2/token"
    token_revocation_endpoint: str = "/oauth2/revoke"
    device_poll_interval: int = 5  # seconds

    def __post_init__(self) -> None:
        try:
            _ISSUER_URL.validate_python(self.issuer)
        except ValidationError as e:
            raise ValueError(f"issuer must be an http(s) URL, got {self.issuer!r}") from e
        object.__setattr__(self, "issuer", self.issuer.rstrip("/"))
        for name in ("authorization_endpoint", "device_authorization_endpoint",
                     "device_verification_endpoint", "token_endpoint",
                     "token_revocation_endpoint"):
            if not getattr(self, name).startswith("/"):
                raise ValueError(f"{name} must be an absolute path")
        if self.device_poll_interval <= 0:
            raise ValueError("device_poll_interval must be positive")

    def url(self, path: str) -> str:
        return f"{self.issuer}{path}"


@dataclass(frozen=True)
class TokenSettings:
    """Token lifetimes (seconds) and refresh rotation policy."""

    access_token_ttl: int = 300
    refresh_token_ttl: int = 3600
    authorization_code_ttl: int = 300
    device_code_ttl: int = 300
    # False: every refresh invalidates the presented refresh token and
    # issues a new one.
    reuse_refresh_tokens: bool = False

    def __post_init__(self) -> None:
        for name in ("access_token_ttl", "refresh_token_ttl",
                     "authorization_code_ttl", "device_code_ttl"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive number of seconds")
        for name in ("authorization_code_ttl", "device_code_ttl"):
            if getattr(self, name) > MAX_CODE_TTL:
                raise ValueError(f"{name} must not exceed {MAX_CODE_TTL} seconds")


@dataclass(frozen=True)
class ClientSettings:
    require_proof_key: bool = False


# ---------------------------------------------------------------------------
# Registered clients
# ---------------------------------------------------------------------------

def hash_client_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


@dataclass(frozen=True)
class RegisteredClient:
    client_id: str
    grant_types: frozenset[GrantType]
    scopes: tuple[str, ...] = ()
    redirect_uris: tuple[str, ...] = ()
    authentication_methods: frozenset[ClientAuthenticationMethod] = frozenset(
        {ClientAuthenticationMethod.CLIENT_SECRET_BASIC}
    )
    client_secret_hash: str | None = None
    client_name: str = ""
    client_settings: ClientSettings = field(default_factory=ClientSettings)
    token_settings: TokenSettings = field(default_factory=TokenSettings)

    def __post_init__(self) -> None:
        if not self.client_id:
            raise ValueError("client_id is required")
        if not self.grant_types:
            raise ValueError(f"client {self.client_id}: at least one grant type is required")
        if GrantType.AUTHORIZATION_CODE in self.grant_types and not self.redirect_uris:
            raise ValueError(f"client {self.client_id}: authorization_code requires redirect_uris")
        if self.is_confidential and not self.client_secret_hash:
            raise ValueError(f"client {self.client_id}: confidential client needs client_secret_hash")

    @property
    def is_confidential(self) -> bool:
        return bool(self.authentication_methods - {ClientAuthenticationMethod.NONE})

    def allows(self, grant_type: GrantType) -> bool:
        return grant_type in self.grant_types

    def verify_secret(self, secret: str) -> bool:
        if not self.client_secret_hash:
            return False
        return hmac.compare_digest(hash_client_secret(secret), self.client_secret_hash)


class ClientRegistry(Protocol):
    async def find_by_client_id(self, client_id: str) -> RegisteredClient | None: ...


class InMemoryClientRegistry:
    """Read-only registry over a fixed set of clients."""

    def __init__(self, clients: Iterable[RegisteredClient] = ()):
        self._clients: dict[str, RegisteredClient] = {}
        for client in clients:
            if client.client_id in self._clients:
                raise ValueError(f"duplicate client_id: {client.client_id}")
            self._clients[client.client_id] = client

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    async def find_by_client_id(self, client_id: str) -> RegisteredClient | None:
        return self._clients.get(client_id)


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def _client_from_yaml(client_id: str, cfg: dict[str, Any]) -> RegisteredClient:
    grant_types = frozenset(GrantType(g) for g in cfg.get("grant_types", []))
    methods = frozenset(
        ClientAuthenticationMethod(m)
        for m in cfg.get("authentication_methods", ["client_secret_basic"])
    )
    return RegisteredClient(
        client_id=client_id,
        grant_types=grant_types,
        scopes=tuple(cfg.get("scopes", [])),
        redirect_uris=tuple(cfg.get("redirect_uris", [])),
        authentication_methods=methods,
        client_secret_hash=cfg.get("client_secret_hash"),
        client_name=cfg.get("client_name", client_id),
        client_settings=ClientSettings(require_proof_key=cfg.get("require_proof_key", False)),
        token_settings=TokenSettings(**cfg.get("token_settings", {})),
    )


def load_config(config_path: Path | None = None) -> tuple[ServerSettings, InMemoryClientRegistry]:
    """Load server settings and registered clients from warden.yaml."""
    if config_path is None:
        config_path = Path(os.environ.get("WARDEN_CONFIG", Path(__file__).parent / "warden.yaml"))
    if not config_path.exists():
        example = Path(__file__).parent / "warden.example.yaml"
        msg = f"Warden config not found: {config_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "server" not in raw:
        raise SystemExit(f"Invalid warden.yaml: expected top-level 'server' key in {config_path}")

    server_cfg = dict(raw["server"] or {})
    issuer_override = os.environ.get("WARDEN_ISSUER_URL")
    if issuer_override:
        server_cfg["issuer"] = issuer_override
    try:
        settings = ServerSettings(**server_cfg)
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Invalid server settings in {config_path}: {e}")

    clients = []
    for client_id, cfg in (raw.get("clients") or {}).items():
        if not isinstance(cfg, dict):
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: expected a mapping")
        try:
            clients.append(_client_from_yaml(str(client_id), cfg))
        except (TypeError, ValueError) as e:
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: {e}")

    logger.info("loaded %d client(s) from %s", len(clients), config_path)
    return settings, InMemoryClientRegistry(clients)
