from __future__ import annotations

import json
import logging


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object) -> None:
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
