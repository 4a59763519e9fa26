"""Per-request correlation ids.

The HTTP middleware stores the id of the current request in a ContextVar.
The orchestrator and the HTTP connector read it back, so every fan-out task
logs (and forwards upstream) the ``req_id`` of the request that spawned it.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar
from typing import Optional

CORRELATION_HEADER = "x-correlation-id"

_request_id_var: ContextVar[str] = ContextVar("appmetrics_request_id", default="")


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id``, or a fresh uuid4 when empty, and return it."""
    req_id = request_id or str(uuid.uuid4())
    _request_id_var.set(req_id)
    return req_id


def get_request_id() -> str:
    """Return the current request correlation id, or empty string."""
    return _request_id_var.get()
