"""Rows the store hands back to callers."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Chatroom:
    id: Optional[int]
    name: str


@dataclass
class Peer:
    id: Optional[int]
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_seen: Optional[datetime] = None


@dataclass
class Message:
    id: Optional[int]
    chatroom: str
    message_text: str
    timestamp: datetime
    latitude: Optional[float]
    longitude: Optional[float]
    sender: str

    def __str__(self) -> str:
        return self.message_text
