from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status


def normalise_api_keys(api_keys: Mapping[str, str] | Iterable[str] | None) -> dict[str, str]:
    """Return ``{key: subject}``; bare keys are their own subject."""

    if api_keys is None:
        return {}
    if isinstance(api_keys, Mapping):
        items = api_keys.items()
    else:
        items = ((key, key) for key in api_keys)
    keys: dict[str, str] = {}
    for key, subject in items:
        token = str(key).strip()
        if token:
            keys[token] = str(subject).strip() or token
    return keys


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


@dataclass(slots=True)
class Principal:
    api_key: str
    subject_id: str


async def principal_dependency(
    request: Request,
    authorization: str | None = Header(None),
) -> Principal:
    token = _bearer_token(authorization)
    keys: Mapping[str, str] = getattr(request.app.state, "api_keys", {})
    if token is None or token not in keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_api_key"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Principal(api_key=token, subject_id=keys[token])


__all__ = ["Principal", "normalise_api_keys", "principal_dependency"]
