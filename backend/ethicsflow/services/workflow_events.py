from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger("ethicsflow.events")

ASSIGNMENT_CREATED = "assignment_created"
REVISION_REQUESTED = "revision_requested"
REVIEW_COMPLETE = "review_complete"
APPROVED = "approved"

WORKFLOW_EVENTS = frozenset({ASSIGNMENT_CREATED, REVISION_REQUESTED, REVIEW_COMPLETE, APPROVED})

EventHandler = Callable[[str, dict[str, Any]], None]


class WorkflowEventBus:
    """
    进程内事件总线：工作流只负责发布事件，邮件 / 站内信由外部订阅者处理。

    中文注释:
    - 订阅者异常只记录日志，不影响已经提交的状态流转。
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> None:
        if event not in WORKFLOW_EVENTS:
            raise ValueError(f"Unknown workflow event: {event}")
        self._handlers[event].append(handler)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event) or []):
            try:
                handler(event, dict(payload))
            except Exception as e:
                logger.error(f"[Events] subscriber failed: event={event} error={e}", exc_info=True)
