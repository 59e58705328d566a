from __future__ import annotations

import contextvars

# Correlation id for the current request or batch item, blank if not set
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
