"""
Bearer Token 鉴权

OAuth 登录由上游完成，这里只校验 JWT 并把 sub 解析为账户 ID，
账户在首次访问时懒创建。
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.app_settings import get_app_settings
from core.config import cfg
from core.db import DB
from core.log import get_logger
from core.events import log_event, E
from core.image_service import is_safe_path_segment
from core.ledger_service import get_or_create_account

logger = get_logger(__name__)

SECRET_KEY = str(cfg.get("auth.secret_key", "coverflow-dev-secret") or "coverflow-dev-secret")
ALGORITHM = str(cfg.get("auth.algorithm", "HS256") or "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(cfg.get("auth.access_token_expire_minutes", 60 * 24 * 7) or 60 * 24 * 7)

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = dict(data)
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError as e:
        log_event(logger, E.AUTH_TOKEN_INVALID, level="warning", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭据",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    sub = str(payload.get("sub") or "").strip()
    if not sub or not is_safe_path_segment(sub):
        log_event(logger, E.AUTH_TOKEN_INVALID, level="warning", error="invalid sub")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭据",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Dict:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_access_token(credentials.credentials)
    account_id = str(payload["sub"]).strip()
    session = DB.get_session()
    try:
        account = get_or_create_account(
            session,
            account_id,
            email=str(payload.get("email") or ""),
            name=str(payload.get("name") or ""),
            picture=str(payload.get("picture") or ""),
            daily_free=get_app_settings().generation.daily_free,
        )
        user = {
            "id": account.id,
            "email": account.email or "",
            "name": account.name or "",
            "picture": account.picture or "",
        }
    finally:
        session.close()
    log_event(logger, E.AUTH_TOKEN_VERIFY, level="debug", account_id=account_id)
    return user
