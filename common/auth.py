"""
Bearer-token authentication shared by every service
"""
from typing import Optional
import jwt
from fastapi import Header
from common.error_handling import Unauthorized
from common.security import verify_token

def user_id_from_authorization(authorization: Optional[str]) -> str:
    """Map an Authorization header value to a verified user id"""
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        claims = verify_token(token)
    except jwt.InvalidTokenError as e:
        raise Unauthorized(f"invalid token: {e}")
    return claims["sub"]

async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    return user_id_from_authorization(authorization)
