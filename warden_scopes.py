"""Scope negotiation shared by every grant handler."""

from typing import Iterable, Sequence

from warden_errors import InvalidScope


def parse_scope(scope: str | None) -> list[str]:
    """Split the space-delimited ``scope`` parameter (RFC 6749 §3.3)."""
    if not scope:
        return []
    return list(dict.fromkeys(scope.split()))


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(scopes)


def negotiate(requested: Iterable[str] | None, registered: Sequence[str]) -> list[str]:
    """Validate requested scopes against a client's registered scopes.

    An absent or empty request is granted the full registered set, in
    registry order. Otherwise every requested scope must be registered
    and the grant keeps the request's ordering. One unknown scope
    rejects the whole request.
    """
    wanted = list(dict.fromkeys(requested or ()))
    if not wanted:
        return list(registered)
    allowed = set(registered)
    unknown = [s for s in wanted if s not in allowed]
    if unknown:
        raise InvalidScope(f"Scope not allowed for this client: {format_scope(unknown)}")
    return wanted


def narrow(requested: Iterable[str] | None, authorized: Sequence[str]) -> list[str]:
    """Pick the scopes for a refreshed access token.

    A refresh may only keep or shrink what was originally authorized.
    """
    wanted = list(dict.fromkeys(requested or ()))
    if not wanted:
        return list(authorized)
    if not set(wanted) <= set(authorized):
        raise InvalidScope()
    return wanted
