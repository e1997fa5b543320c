from datetime import datetime, timedelta, timezone
from typing import Dict, List

from fastapi import HTTPException, status
from jose import JWTError, jwt

from dealer_sync.core.config import settings

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    'admin': ['sync:run', 'sync:read', 'confirmations:write', 'confirmations:read'],
    'operator': ['sync:run', 'sync:read', 'confirmations:read'],
    'dealer': ['confirmations:write', 'confirmations:read'],
    'viewer': ['sync:read', 'confirmations:read'],
}


def permissions_for(role: str) -> list[str]:
    return list(ROLE_PERMISSIONS.get(str(role or '').strip().lower(), []))


def create_access_token(data: dict, expires_minutes: int | None = None):
    to_encode = data.copy()
    if 'permissions' not in to_encode and to_encode.get('role'):
        to_encode['permissions'] = permissions_for(to_encode['role'])
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or settings.jwt_expire_minutes)
    to_encode.update({'exp': expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str):
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={'error_code': 'UNAUTHORIZED', 'message': 'Token invalido', 'details': None},
        )
    if 'permissions' not in payload and payload.get('role'):
        payload['permissions'] = permissions_for(payload['role'])
    return payload


def assert_permission(payload: dict, required: str):
    perms = payload.get('permissions', [])
    if required not in perms:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={'error_code': 'FORBIDDEN', 'message': 'Permiso insuficiente', 'details': {'required': required}},
        )
