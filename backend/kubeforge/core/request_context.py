"""
Request-scoped context variables.

让日志自动携带 request_id，无需在业务代码中层层传递。
"""

from __future__ import annotations

from contextvars import ContextVar
from typing import Optional


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
