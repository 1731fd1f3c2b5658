"""Static API-key check for mutating routes (X-API-KEY header, exact match)."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header

from .config_loader import get_api_key
from .errors import Unauthorized

log = logging.getLogger("gridsim")


def require_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY")) -> None:
    expected = get_api_key()
    if not x_api_key or expected is None or x_api_key != expected:
        log.info("rejected request with %s API key", "missing" if not x_api_key else "bad")
        raise Unauthorized("Unauthorized")
