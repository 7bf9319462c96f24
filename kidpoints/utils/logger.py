import logging
from typing import Any, Dict, Optional

log = logging.getLogger("kidpoints.store")

SENSITIVE_PARAMS = {
    "clear",
    "secret",
    "pin",
    "password",
    "p_secret",
    "p_pin",
}


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in (params or {}).items():
        if k.lower() in SENSITIVE_PARAMS:
            out[k] = "***masked***"
        else:
            out[k] = v
    return out


def log_call(kind: str, name: str, params: Optional[Dict[str, Any]] = None) -> None:
    log.debug({"kind": kind, "name": name, "params": mask_params(params)})
