"""API surface for invoice-bridge."""

from .routes import make_routes
from .tools import register_tools

__all__ = ["make_routes", "register_tools"]
