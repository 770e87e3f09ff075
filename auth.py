from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Optional

from database import Database, utcnow
from errors import Unauthorized

logger = logging.getLogger(__name__)


def generate_api_key() -> str:
    """Return a new raw key: 32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def resolve_user_id(database: Database, api_key: Optional[str]) -> str:
    if not api_key:
        raise Unauthorized("Missing API Key")

    key_hash = hash_api_key(api_key)
    doc = database["apikey"].find_one({"key_hash": key_hash}, {"user_id": 1})
    if not doc:
        logger.info("API key not found for hash %s", key_hash)
        raise Unauthorized("Invalid API Key")

    database["apikey"].update_one({"_id": doc["_id"]}, {"$set": {"last_used_at": utcnow()}})
    return doc["user_id"]


def check_admin_token(expected: Optional[str], presented: Optional[str]) -> bool:
    if not expected or not presented:
        return False
    return secrets.compare_digest(expected, presented)
