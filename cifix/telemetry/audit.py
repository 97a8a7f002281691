from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional


_SECRET_KEYS = ("token", "api_key", "password", "secret")


def scrub(payload: Any, secrets: Iterable[str] = ()) -> Any:
    """
    Mask secret-looking keys and any known secret values before they hit disk.
    """
    values = [s for s in secrets if s]
    if isinstance(payload, dict):
        out: Dict[str, Any] = {}
        for k, v in payload.items():
            if any(sk in str(k).lower() for sk in _SECRET_KEYS) and v:
                out[k] = "***"
            else:
                out[k] = scrub(v, values)
        return out
    if isinstance(payload, list):
        return [scrub(v, values) for v in payload]
    if isinstance(payload, str):
        for s in values:
            payload = payload.replace(s, "***")
        return payload
    return payload


class AuditLogger:
    """
    Append-only JSONL audit trail. One record per job event; the job id is the correlation id.
    """

    def __init__(self, path: str, *, secrets: Iterable[Optional[str]] = ()):
        self.path = path
        self._secrets = [s for s in secrets if s]

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: str = "cifix",
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id,
            "actor": actor,
            "event_type": event_type,
            "payload": scrub(payload, self._secrets),
        }
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
