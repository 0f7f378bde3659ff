from .server import create_app, register_guard_routes
from .metrics import GuardMetrics

__all__ = [
    "create_app",
    "register_guard_routes",
    "GuardMetrics",
]
