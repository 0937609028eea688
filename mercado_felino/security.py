import logging
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Optional, Union

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session
from starlette.routing import Match

from mercado_felino.config import get_settings
from mercado_felino.database import get_db
from mercado_felino.errors import AuthError, ForbiddenError, InternalError
from mercado_felino.models import User

log = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)
bearer_scheme = HTTPBearer(auto_error=False)

PUBLIC = "public"
AUTHENTICATED = "authenticated"
USER = frozenset({"user"})
ADMIN = frozenset({"admin"})

Access = Union[str, FrozenSet[str]]

POLICY = {
    ("GET", "/"): PUBLIC,
    ("POST", "/api/auth/register"): PUBLIC,
    ("POST", "/api/auth/login"): PUBLIC,
    ("GET", "/api/products"): PUBLIC,
    ("GET", "/api/products/{product_id}"): PUBLIC,
    ("POST", "/api/products"): ADMIN,
    ("PUT", "/api/products/{product_id}"): ADMIN,
    ("DELETE", "/api/products/{product_id}"): ADMIN,
    ("GET", "/api/cart"): USER,
    ("POST", "/api/cart/add"): USER,
    ("PUT", "/api/cart/update-quantity/{product_id}"): USER,
    ("DELETE", "/api/cart/remove/{product_id}"): USER,
    ("POST", "/api/orders"): AUTHENTICATED,
    ("GET", "/api/orders/my-orders"): AUTHENTICATED,
    ("GET", "/api/orders"): ADMIN,
    ("POST", "/api/ai-chat/message"): USER,
    ("GET", "/api/ai-chat/session"): USER,
    ("POST", "/api/chat/message"): USER,
    ("GET", "/api/chat/history"): USER,
}


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _secret() -> str:
    secret = get_settings().jwt_secret
    if not secret:
        raise InternalError("JWT_SECRET is not configured")
    return secret


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode({"sub": str(user_id), "exp": expire}, _secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> int:
    """Return the user id embedded in a valid token."""
    try:
        payload = jwt.decode(token, _secret(), algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise AuthError("Not authorized, token expired")
    except JWTError:
        raise AuthError("Not authorized, token failed")
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        raise AuthError("Not authorized, token failed")


def authenticate(credentials: Optional[HTTPAuthorizationCredentials], db: Session) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthError("Not authorized, no token")
    user_id = decode_access_token(credentials.credentials)
    user = db.get(User, user_id)
    if user is None:
        log.warning("Token for unknown user id %s rejected", user_id)
        raise AuthError("Not authorized, user not found")
    return user


def authorize(access: Optional[Access], user: User):
    if access == AUTHENTICATED:
        return
    if not isinstance(access, frozenset) or user.role not in access:
        raise ForbiddenError("Access denied for role '%s'" % user.role)


def route_path(request: Request) -> str:
    """Path template of the route matching this request."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return route.path
    return request.url.path


def lookup_access(method: str, path: str) -> Optional[Access]:
    return POLICY.get((method.upper(), path))


def enforce_policy(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Optional[User]:
    access = lookup_access(request.method, route_path(request))
    if access == PUBLIC:
        return None
    user = authenticate(credentials, db)
    authorize(access, user)
    return user


def current_user(user: Optional[User] = Depends(enforce_policy)) -> User:
    if user is None:
        raise AuthError()
    return user
