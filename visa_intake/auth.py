from fastapi import Header, HTTPException
from jose import jwt, JWTError

from visa_intake.config import get_settings
from visa_intake.workflow import Actor, Role

TOKEN_ROLES = (Role.CUSTOMER, Role.EMPLOYEE, Role.ADMIN)


def get_actor(authorization: str = Header(...)) -> Actor:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        role = Role(claims["role"])
        if role not in TOKEN_ROLES or not claims.get("sub"):
            raise ValueError("unsupported principal")
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return Actor(id=str(claims["sub"]), role=role)
