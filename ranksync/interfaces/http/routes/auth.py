#!/usr/bin/env python
"""Account routes for list owners.

Lists belong to the logged-in user. With ``LOGIN_DISABLED`` the server runs in
single-user mode, every list belongs to the system owner and these routes only
report that.
"""

from __future__ import annotations

import logging
import re
from typing import Tuple

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_user, logout_user

from ranksync.core.errors import CredentialsError, DuplicateNameError, ListSyncError, ValidationError
from ranksync.database.db_manager import User, db

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


@auth_bp.errorhandler(ListSyncError)
def _handle_auth_error(exc: ListSyncError):
    logger.info("Account request rejected (%s)", exc.code)
    return jsonify(exc.to_dict()), exc.status


def _credentials(strict: bool) -> Tuple[str, str]:
    body = request.get_json(silent=True) or {}
    email = str(body.get("email") or "").strip().lower()
    password = str(body.get("password") or "").strip()
    if not strict:
        if not email or not password:
            raise ValidationError("Email and password are required")
        return email, password

    problems = {}
    if not _EMAIL_RE.match(email):
        problems["email"] = "not a valid address"
    if len(password) < MIN_PASSWORD_LENGTH:
        problems["password"] = f"shorter than {MIN_PASSWORD_LENGTH} characters"
    if problems:
        raise ValidationError("Invalid account details", details=problems)
    return email, password


def _owner_payload(user) -> dict:
    data = user.to_dict()
    data["list_count"] = len(user.lists)
    return {"user": data, "single_user": bool(current_app.config.get("LOGIN_DISABLED"))}


@auth_bp.route("/register", methods=["POST"])
def register():
    email, password = _credentials(strict=True)
    if User.query.filter_by(email=email).first() is not None:
        raise DuplicateNameError("An account with this email already exists", code="duplicate_email")

    owner = User(email=email)
    owner.set_password(password)
    db.session.add(owner)
    db.session.commit()
    login_user(owner)
    logger.info("Registered list owner %s", owner.id)
    return jsonify(_owner_payload(owner)), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    email, password = _credentials(strict=False)
    owner = User.query.filter_by(email=email).first()
    # The system owner holds single-user lists and never logs in.
    if owner is None or owner.is_system or not owner.check_password(password):
        raise CredentialsError("Invalid email or password")
    if not login_user(owner):
        raise CredentialsError("Account is disabled", code="account_disabled")
    return jsonify(_owner_payload(owner)), 200


@auth_bp.route("/logout", methods=["POST"])
def logout():
    if current_user.is_authenticated:
        logout_user()
    return jsonify({"success": True}), 200


@auth_bp.route("/session", methods=["GET"])
def session_info():
    if current_user.is_authenticated:
        return jsonify(_owner_payload(current_user)), 200
    return jsonify({"user": None, "single_user": bool(current_app.config.get("LOGIN_DISABLED"))}), 200


__all__ = ["auth_bp"]
