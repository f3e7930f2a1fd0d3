from dataclasses import dataclass
from typing import Optional
import logging

from firebase_admin import auth

from src.chat.errors import Unauthorized

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    user_id: str
    role: str = "user"
    name: Optional[str] = None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class FirebaseService:
    """Identity provider: resolves a Firebase ID token to a user id and role."""

    def __init__(self, app=None):
        self.app = app

    def verify_token(self, token: str) -> Identity:
        if not token:
            raise Unauthorized("missing bearer token")
        try:
            claims = auth.verify_id_token(token, app=self.app)
        except (auth.ExpiredIdTokenError, auth.RevokedIdTokenError):
            raise Unauthorized("token expired, please login again", reason="token-expired")
        except (auth.InvalidIdTokenError, ValueError) as e:
            logger.info("Rejected bearer token: %s", e)
            raise Unauthorized("invalid token, please login again", reason="invalid-token")

        return Identity(
            user_id=claims["uid"],
            role=claims.get("role", "user"),
            name=claims.get("name"),
        )
