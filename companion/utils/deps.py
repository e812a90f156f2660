from jose import JWTError, jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from companion.db.models import User
from companion.db.session import get_db
from companion.core.config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


def decode_user_id(token: str) -> int:
    """User id from the token's `sub`; raises JWTError for anything unusable."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    sub = payload.get("sub")
    try:
        return int(sub)
    except (TypeError, ValueError):
        raise JWTError("token subject is not a user id")


async def get_current_user(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    # bearer header first, then the session cookie
    token_value = token or request.cookies.get(settings.ACCESS_TOKEN_COOKIE_NAME)
    if not token_value:
        raise credentials_exception

    try:
        user_id = decode_user_id(token_value)
    except JWTError:
        raise credentials_exception

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise credentials_exception

    return user


def require_role(*roles: str):
    async def _dep(user: User = Depends(get_current_user)) -> User:
        if user.user_type not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action is only available to {' or '.join(roles)} accounts",
            )
        return user

    return _dep


get_current_admin = require_role("admin")
