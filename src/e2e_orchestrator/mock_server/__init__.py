"""Mock API server backed by the fixture registry."""

from .app import ADMIN_PREFIX, create_app
from .request_log import RequestLog, RequestRecord
from .server import DEFAULT_PORT, FailureInjector, MockAPIServer, seed_from_run_id

__all__ = [
    "ADMIN_PREFIX",
    "DEFAULT_PORT",
    "FailureInjector",
    "MockAPIServer",
    "RequestLog",
    "RequestRecord",
    "create_app",
    "seed_from_run_id",
]
