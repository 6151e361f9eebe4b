"""
Progress events emitted while an indexing run is active.

Delivery is fire-and-forget: a failing subscriber never affects the run.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class EventKind(Enum):
    START = "start"
    SCAN = "scan"
    STOP = "stop"
    EMBED = "embed"
    FINISH = "finish"


@dataclass
class IndexingEvent:
    kind: EventKind
    task_id: Optional[int]
    msg: str

    def to_dict(self) -> dict:
        return {"event": self.kind.value, "data": {"taskId": self.task_id, "msg": self.msg}}


EventSink = Callable[[IndexingEvent], None]


def send_event(sink: Optional[EventSink], kind: EventKind, task_id: Optional[int], msg: str) -> None:
    if sink is None:
        return
    try:
        sink(IndexingEvent(kind, task_id, msg))
    except Exception as e:
        logger.warning(f"Progress event {kind.value} not delivered: {e}")
