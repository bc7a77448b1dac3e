from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from territory.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def decode_token(token: str) -> AuthUser | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    user = decode_token(token)
    if user is None:
        return AuthUser(sub="anonymous", roles=["guest"])
    return user
