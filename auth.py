"""
Staff authentication.

Staff users live in the ``user`` collection with a bcrypt password hash. A
successful login hands back the shared staff token configured in
``STAFF_TOKEN``; kitchen and owner routes require it as a bearer token.
"""
import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

from database import get_documents

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer = HTTPBearer(auto_error=False)

STAFF_TOKEN = os.getenv("STAFF_TOKEN")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def authenticate(database: Database, email: str, password: str) -> Optional[dict]:
    users = get_documents(database, "user", {"email": email.lower()}, limit=1)
    if not users:
        return None
    user = users[0]
    if not pwd_context.verify(password, user["passwordHash"]):
        return None
    return user


def require_staff(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> None:
    if not STAFF_TOKEN:
        logger.warning("STAFF_TOKEN is not configured, rejecting staff request")
        raise HTTPException(status_code=401, detail="Staff access is not configured")
    if credentials is None or not secrets.compare_digest(credentials.credentials, STAFF_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid or missing staff token")
