"""
core/errors.py -- Error taxonomy shared by the auth core and the route layer.

Every failure the request pipeline can produce has a machine-readable code
from ErrorCode. Route handlers turn codes into redirects, status codes and
user-facing messages; the codes themselves never leave the server as raw
user input (see web/templating.py ERROR_MESSAGES).

Layer rule: core/ is the kernel and imports nothing from api/, web/ or auth/.
"""

from enum import Enum


class ErrorCode(str, Enum):
    rate_limited = "rate_limited"
    invalid_credentials = "invalid_credentials"
    csrf_invalid = "csrf_invalid"
    unauthenticated = "unauthenticated"
    validation_failed = "validation_failed"
    not_found = "not_found"
    store_unavailable = "store_unavailable"


class StoreUnavailableError(RuntimeError):
    """The credential or session store cannot be reached.

    Fatal for the request (503) and never retried automatically. Raised at
    startup it aborts the lifespan so the process does not accept traffic.
    """

    code = ErrorCode.store_unavailable
