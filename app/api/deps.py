import json

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from jwt.exceptions import PyJWTError
from pydantic import ValidationError

from app.core.config import settings
from app.core.redis import redis_client
from app.db.models import UserRole
from app.schemas.auth import Caller

# Tokens are issued by the auth service and registered in Redis
bearer_scheme = HTTPBearer(auto_error=False)

async def get_current_caller(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> Caller:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    token = credentials.credentials
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except PyJWTError:
        raise credentials_exception

    # Logged-out tokens are gone from Redis even if the JWT has not expired
    stored = await redis_client.get_token(token)
    if stored is None:
        raise credentials_exception
    try:
        token_data = json.loads(stored)
        return Caller(id=user_id, role=token_data.get("role"))
    except (json.JSONDecodeError, ValidationError):
        raise credentials_exception

async def require_doctor(caller: Caller = Depends(get_current_caller)) -> Caller:
    if caller.role != UserRole.DOCTOR:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Doctor access required")
    return caller

async def require_patient(caller: Caller = Depends(get_current_caller)) -> Caller:
    if caller.role != UserRole.PATIENT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Patient access required")
    return caller
