from fastapi import Header, HTTPException
from jose import JWTError, jwt

from marketplace.config import JWT_ALGORITHM, JWT_SECRET


def verify_token(authorization: str = Header(...)) -> str:
    """Returns the caller's user id (the token's `sub`)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user_id
