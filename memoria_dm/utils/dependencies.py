import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from memoria_dm.database.connection import mongo_db_dependency
from memoria_dm.repositories.user_repository import UserRepository
from memoria_dm.utils.security import decode_access_token


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db = Depends(mongo_db_dependency),
) -> dict:
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise unauthorized
    try:
        payload = decode_access_token(credentials.credentials)
    except jwt.InvalidTokenError:
        raise unauthorized
    user_id = payload.get("sub")
    if not user_id:
        raise unauthorized
    user = await UserRepository(db).get_user_by_id(user_id)
    if not user:
        raise unauthorized
    return user
