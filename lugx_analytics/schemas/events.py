from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel


class EventIngest(BaseModel):
    """Batched events payload sent by the storefront tracker and services.

    Entries are left raw on purpose: each one is validated individually so a
    single bad record is reported by index instead of failing the request.
    """
    events: List[Any]
