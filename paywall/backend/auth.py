import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def verify_token(authorization: str = Header(...)) -> str:
    """Validate the bearer JWT and return its subject (the payer)."""
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise RuntimeError("JWT_SECRET is not set. Check your .env file.")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError(scheme)
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    subject = claims.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(subject)
