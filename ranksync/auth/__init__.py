#!/usr/bin/env python
"""Flask-Login integration."""

from __future__ import annotations

from flask import jsonify
from flask_login import LoginManager

login_manager = LoginManager()
login_manager.session_protection = "strong"
login_manager.login_message = None


def init_auth(app):
    """Attach Flask-Login to the app and register the auth blueprint."""
    from ranksync.database.db_manager import User, db
    from ranksync.interfaces.http.routes.auth import auth_bp

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def _unauthorized():
        return jsonify({"error": "authentication_required"}), 401

    app.register_blueprint(auth_bp)
    return login_manager


__all__ = ["login_manager", "init_auth"]
