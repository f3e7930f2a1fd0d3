"""Typing indicators modelled as short leases.

A lease is created or renewed by every ``typing`` signal and lapses after
``ttl`` seconds without renewal. Nothing here is persisted.
"""
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple
import time

from src.configs.settings import TYPING_TTL_SECONDS


@dataclass
class TypingSignal:
    conversation_id: str
    sender_id: str
    sender_name: str
    emitted_at: float
    expires_at: float


class TypingLeases:
    def __init__(self, ttl: float = TYPING_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._leases: Dict[Tuple[str, str], TypingSignal] = {}

    def renew(self, conversation_id: str, sender_id: str, sender_name: str = "") -> bool:
        """Start or extend a lease. Returns True when the sender was not already typing."""
        now = self.clock()
        key = (conversation_id, sender_id)
        current = self._leases.get(key)
        fresh = current is None or current.expires_at <= now
        self._leases[key] = TypingSignal(
            conversation_id=conversation_id,
            sender_id=sender_id,
            sender_name=sender_name or (current.sender_name if current else ""),
            emitted_at=now,
            expires_at=now + self.ttl,
        )
        return fresh

    def release(self, conversation_id: str, sender_id: str) -> bool:
        return self._leases.pop((conversation_id, sender_id), None) is not None

    def is_active(self, conversation_id: str, sender_id: str) -> bool:
        lease = self._leases.get((conversation_id, sender_id))
        return lease is not None and lease.expires_at > self.clock()

    def active(self, conversation_id: str) -> List[TypingSignal]:
        now = self.clock()
        return [s for (cid, _), s in self._leases.items() if cid == conversation_id and s.expires_at > now]

    def expire(self) -> List[TypingSignal]:
        """Drop and return every lease that lapsed without renewal."""
        now = self.clock()
        lapsed = [key for key, s in self._leases.items() if s.expires_at <= now]
        return [self._leases.pop(key) for key in lapsed]

    def __len__(self):
        return len(self._leases)
