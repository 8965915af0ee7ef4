"""Web Service: HTTP surface over per-client workspaces.

Each HTTP session owns a ClientWorkspace composing the session controller,
role resolver, screen router and observation managers. Backends (in-memory,
PostgreSQL, Cognito) are chosen by AppConfig.
"""

from .config import AppConfig
from .workspace import ActionResult, ClientWorkspace

__all__ = [
    "AppConfig",
    "ActionResult",
    "ClientWorkspace",
]
