"""Bounded log of upstream API requests."""

import itertools
import json
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from product_gateway.models.data_models import RequestLogEntry


class RequestLog:
    """
    Records one entry per upstream request attempt.

    ``start`` writes the request side (provider, endpoint, method, serialized
    params, timestamp); ``complete`` fills in the response side. Only the most
    recent ``max_entries`` entries are kept.
    """

    def __init__(
        self,
        enabled: bool = True,
        max_entries: int = 1000,
        now: Callable[[], float] = time.time,
    ):
        self.enabled = enabled
        self._now = now
        self._entries: Deque[RequestLogEntry] = deque(maxlen=max_entries)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def start(
        self,
        provider: str,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[RequestLogEntry]:
        if not self.enabled:
            return None
        entry = RequestLogEntry(
            id=next(self._ids),
            provider=provider,
            endpoint=endpoint,
            method=method,
            request_data=json.dumps(params or {}, sort_keys=True, default=str),
            created_at=self._now(),
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def complete(
        self,
        entry: Optional[RequestLogEntry],
        response_code: Optional[int],
        response_message: str = "",
        credits_used: int = 0,
        execution_time: Optional[float] = None,
    ) -> None:
        if entry is None:
            return
        with self._lock:
            entry.response_code = response_code
            entry.response_message = response_message
            entry.credits_used = credits_used
            entry.execution_time = execution_time

    def entries(self, provider: Optional[str] = None) -> List[RequestLogEntry]:
        with self._lock:
            return [e for e in self._entries if provider is None or e.provider == provider]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
