from dataclasses import dataclass

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import InvalidTokenError

from telemetry_store.config import settings


@dataclass(frozen=True)
class AuthUser:
    """The principal whose namespace a request reads and writes."""

    user_id: str
    source: str
    is_admin: bool = False


def _parse_api_key_mappings() -> dict[str, str]:
    mapping: dict[str, str] = {}
    for item in settings.api_key_mappings.split(","):
        api_key, sep, user_id = item.strip().partition(":")
        if sep and api_key.strip() and user_id.strip():
            mapping[api_key.strip()] = user_id.strip()
    return mapping


def _bearer_token(authorization: str | None) -> str:
    prefix = "Bearer "
    if not authorization or not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="missing bearer token")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return token


def _user_from_jwt(authorization: str | None) -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    decode_kwargs = {"key": settings.jwt_secret, "algorithms": [settings.jwt_algorithm]}
    if settings.jwt_audience:
        decode_kwargs["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        decode_kwargs["issuer"] = settings.jwt_issuer
    try:
        payload = jwt.decode(_bearer_token(authorization), **decode_kwargs)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid bearer token: {exc}") from exc
    user_id = str(payload.get("sub") or payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="jwt missing subject claim")
    return user_id


def _user_from_api_key(x_api_key: str | None) -> str:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing API key")
    user_id = _parse_api_key_mappings().get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=403, detail="invalid API key")
    return user_id


def require_api_user(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> AuthUser:
    mode = settings.auth_mode.lower().strip()
    if mode == "jwt" or (mode == "hybrid" and authorization):
        user_id, source = _user_from_jwt(authorization), "jwt"
    elif mode in ("api_key", "hybrid"):
        user_id, source = _user_from_api_key(x_api_key), "api_key"
    else:
        raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")

    admin_ids = {item.strip() for item in settings.admin_user_ids.split(",") if item.strip()}
    return AuthUser(user_id=user_id, source=source, is_admin=user_id in admin_ids)


def require_admin_user(user: AuthUser = Depends(require_api_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return user
