"""Bridge session state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from mcpbridge.bridge.process import WorkerProcess
from mcpbridge.bridge.stream import EventStream


class SessionState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    CLOSED = "closed"


@dataclass
class BridgeSession:
    """One client stream bound to one worker process.

    Sessions are never reused: once CLOSED, a client must open a new one.
    """

    session_id: str
    worker: WorkerProcess
    stream: EventStream
    state: SessionState = SessionState.STARTING

    # Serializes stdin writes so input lines keep their submission order
    input_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    tasks: list[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state is not SessionState.CLOSED and self.worker.is_running
