from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from courier.core.errors import UnknownJobTypeError
from courier.services.senders.base import Delivery


logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[None]]

_job_handlers: dict[str, JobHandler] = {}


def register_job_handler(job_type: str, handler: JobHandler) -> None:
    # Later registrations replace earlier ones so tests and reloads stay deterministic.
    if job_type in _job_handlers:
        logger.info("job_handler_replaced job_type=%s", job_type)
    _job_handlers[job_type] = handler


def unregister_job_handler(job_type: str) -> None:
    _job_handlers.pop(job_type, None)


def registered_job_types() -> list[str]:
    return sorted(_job_handlers)


class JobSender:
    """Run generic background jobs through the registered handler for their type."""

    def __init__(self, handlers: dict[str, JobHandler] | None = None) -> None:
        self._handlers = handlers

    def _resolve(self, job_type: str) -> JobHandler:
        handlers = self._handlers if self._handlers is not None else _job_handlers
        handler = handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(f"No handler registered for job type '{job_type}'")
        return handler

    async def send(self, delivery: Delivery) -> None:
        handler = self._resolve(delivery.target)
        args = delivery.payload.get("args")
        await handler(dict(args) if isinstance(args, dict) else {})
