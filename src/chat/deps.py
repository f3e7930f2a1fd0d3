from typing import Optional

from fastapi import Depends, Header

from src.firebase.firebase_service import FirebaseService, Identity, bearer_token
from .bus import DeliveryBus
from .presence import TypingLeases

bus = DeliveryBus()
typing_leases = TypingLeases()

_identity_provider: Optional[FirebaseService] = None
_service = None


def get_identity_provider() -> FirebaseService:
    global _identity_provider
    if _identity_provider is None:
        from src.configs.firebase_config import initialize_firebase
        _identity_provider = FirebaseService(initialize_firebase())
    return _identity_provider


def get_service():
    global _service
    if _service is None:
        from .attachments import GridFSBlobStore
        from .db import conversations_col, messages_col, properties_col, users_col, fs_bucket
        from .directory import Directory
        from .service import ChatService
        _service = ChatService(
            conversations_col,
            messages_col,
            Directory(properties_col, users_col),
            bus,
            GridFSBlobStore(fs_bucket),
        )
    return _service


def get_current_user(
    authorization: Optional[str] = Header(None),
    provider: FirebaseService = Depends(get_identity_provider),
) -> Identity:
    return provider.verify_token(bearer_token(authorization))
