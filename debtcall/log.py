from __future__ import annotations

import json


def log_event(enabled: bool, *, component: str, event: str, **payload: object) -> None:
    """Single-line structured event, compact and key-sorted so logs diff cleanly."""
    if not enabled:
        return
    base: dict[str, object] = {
        "component": component,
        "event": event,
    }
    base.update(payload)
    print(json.dumps(base, sort_keys=True, separators=(",", ":"), default=str))
