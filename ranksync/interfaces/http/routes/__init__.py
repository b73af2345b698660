"""Route blueprints exposed via Flask."""

from .auth import auth_bp
from .events import events_bp
from .health import health_bp
from .lists import lists_bp
from .years import years_bp

__all__ = [
    "auth_bp",
    "events_bp",
    "health_bp",
    "lists_bp",
    "years_bp",
]
