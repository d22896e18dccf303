from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

NOTICE_LEVELS = {"info", "warning", "error", "success"}


@dataclass(slots=True)
class Notice:
    """User-visible message produced by the mic engine."""

    level: str
    code: str
    message: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.level not in NOTICE_LEVELS:
            self.level = "info"

    def to_dict(self) -> Dict[str, object]:
        return {
            "level": self.level,
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
        }


NoticeCallback = Callable[[Notice], Awaitable[None] | None]


async def deliver_notice(callback: Optional[NoticeCallback], notice: Notice) -> None:
    log = logger.warning if notice.level in {"warning", "error"} else logger.info
    log("Notice [%s] %s: %s", notice.level, notice.code, notice.message)
    if callback is None:
        return
    try:
        result = callback(notice)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Notice callback failed")
