"""Small HTTP-related constants shared across castor.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Retryable status codes shared by error classification and orchestrator retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

# Bytes of an error body kept in exception messages.
ERROR_BODY_PREVIEW_CHARS = 500

SSE_ACCEPT = "text/event-stream"
JSON_CONTENT_TYPE = "application/json"
