import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import Settings, settings as default_settings
from ..db import get_db
from ..models.models import Company, Worker
from ..schemas.marketplace import Principal, UserType


http_bearer = HTTPBearer(auto_error=False)


def _settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or default_settings


def create_access_token(
    user_id: uuid.UUID,
    user_type: UserType,
    cfg: Optional[Settings] = None,
    ttl_seconds: Optional[int] = None,
) -> str:
    # Production tokens are minted by the auth service; this is its format
    cfg = cfg or default_settings
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(user_id),
        "user_type": UserType(user_type).value,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or cfg.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, cfg.jwt_secret, algorithm=cfg.jwt_algorithm)


def decode_token(token: str, cfg: Optional[Settings] = None) -> dict:
    cfg = cfg or default_settings
    try:
        return jwt.decode(token, cfg.jwt_secret, algorithms=[cfg.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_principal(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> Principal:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials, _settings(request))
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
        user_type = UserType(payload.get("user_type"))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")

    model = Worker if user_type is UserType.worker else Company
    party = db.query(model).filter(model.id == user_id).first()
    if party is None or not party.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    return Principal(user_id, user_type)


def require_company(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_company:
        raise HTTPException(status_code=403, detail="Company account required")
    return principal


def require_worker(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_worker:
        raise HTTPException(status_code=403, detail="Worker account required")
    return principal
