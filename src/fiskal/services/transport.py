from __future__ import annotations

import os
from dataclasses import dataclass

from fiskal.config import APP_NAME, CIS_TIMEOUT, ERACUN_TIMEOUT

_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class TransportConfig:
    """HTTP settings shared by both protocol clients.

    Built once by the caller and passed down; ``verify`` goes straight to
    ``requests`` (True, False, or a CA bundle path).
    """

    verify: bool | str = True
    cis_timeout: float = CIS_TIMEOUT
    eracun_timeout: float = ERACUN_TIMEOUT
    user_agent: str = f"{APP_NAME}/0.1"

    @classmethod
    def from_env(cls) -> TransportConfig:
        raw = os.environ.get("FISKAL_TLS_VERIFY", "").strip()
        verify: bool | str = True
        if raw.lower() in _FALSY:
            verify = False
        elif raw and raw.lower() not in {"1", "true", "yes", "on"}:
            verify = raw
        return cls(
            verify=verify,
            cis_timeout=float(os.environ.get("FISKAL_CIS_TIMEOUT", CIS_TIMEOUT)),
            eracun_timeout=float(os.environ.get("FISKAL_ERACUN_TIMEOUT", ERACUN_TIMEOUT)),
        )
