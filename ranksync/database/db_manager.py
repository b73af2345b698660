# ranksync/database/db_manager.py
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash
import os
import logging
import uuid
from datetime import datetime
from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.engine import make_url
from sqlalchemy.orm import relationship

from ranksync.core.identity import ENTRY_FIELDS

# Initialize the SQLAlchemy object
db = SQLAlchemy()
logger = logging.getLogger(__name__)

SYSTEM_USER_EMAIL = "system@ranksync.local"
UNCATEGORIZED_GROUP = "Uncategorized"


def _new_list_id() -> str:
    return uuid.uuid4().hex[:24]


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_system = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    lists = relationship(
        "RankedList",
        back_populates="owner",
        cascade="all, delete-orphan",
        lazy=True,
    )
    groups = relationship(
        "ListGroup",
        back_populates="owner",
        cascade="all, delete-orphan",
        lazy=True,
    )

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def get_id(self) -> str:
        return str(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "is_system": self.is_system,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class ListGroup(db.Model):
    """A year bucket or free-form collection holding a user's lists."""

    __tablename__ = "list_groups"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    year = db.Column(db.Integer, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    owner = relationship("User", back_populates="groups")
    lists = relationship("RankedList", back_populates="group", lazy=True)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_list_groups_user_name"),
    )

    @property
    def is_auto(self) -> bool:
        # Year groups are created on demand and removed once they hold no list.
        return self.year is not None and self.name == str(self.year)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "year": self.year,
            "sort_order": self.sort_order,
        }


class RankedList(db.Model):
    __tablename__ = "lists"

    id = db.Column(db.String(32), primary_key=True, default=_new_list_id)
    user_id = db.Column(db.Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = db.Column(db.Integer, ForeignKey("list_groups.id", ondelete="SET NULL"), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    year = db.Column(db.Integer, nullable=True, index=True)
    is_main = db.Column(db.Boolean, default=False, nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    owner = relationship("User", back_populates="lists")
    group = relationship("ListGroup", back_populates="lists")
    entries = relationship(
        "ListEntry",
        back_populates="ranked_list",
        order_by="ListEntry.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dict(self, *, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "year": self.year,
            "group_id": self.group_id,
            "is_main": self.is_main,
            "sort_order": self.sort_order,
            "count": len(self.entries or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            data["items"] = [entry.to_dict() for entry in self.entries]
        return data

    def __repr__(self) -> str:
        return f"<RankedList {self.name!r} ({self.year})>"


class ListEntry(db.Model):
    __tablename__ = "list_entries"

    id = db.Column(db.Integer, primary_key=True)
    list_id = db.Column(db.String(32), ForeignKey("lists.id", ondelete="CASCADE"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    # Natural key, indexed for lookups but deliberately not unique.
    identity = db.Column(db.String(1024), nullable=False, index=True)

    artist = db.Column(db.String(255), nullable=False, default="")
    title = db.Column(db.String(255), nullable=False, default="")
    release_date = db.Column(db.String(32), nullable=True)
    country = db.Column(db.String(128), nullable=True)
    genres = db.Column(db.JSON, nullable=True)  # list[str]
    comment = db.Column(db.Text, nullable=True)
    track_pick = db.Column(db.String(255), nullable=True)
    cover_image = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    ranked_list = relationship("RankedList", back_populates="entries")

    def to_dict(self) -> dict:
        return {
            "artist": self.artist,
            "title": self.title,
            "release_date": self.release_date,
            "country": self.country,
            "genres": list(self.genres or []),
            "comment": self.comment,
            "track_pick": self.track_pick,
            "cover_image": self.cover_image,
            "position": self.position,
            "identity": self.identity,
        }

    def __repr__(self) -> str:
        return f"<ListEntry #{self.position} {self.identity}>"


class YearLock(db.Model):
    __tablename__ = "year_locks"

    year = db.Column(db.Integer, primary_key=True, autoincrement=False)
    locked = db.Column(db.Boolean, default=False, nullable=False)
    locked_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "locked": self.locked,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
        }


class YearAggregate(db.Model):
    """Combined ranking of every user's main list for one year."""

    __tablename__ = "year_aggregates"

    year = db.Column(db.Integer, primary_key=True, autoincrement=False)
    data = db.Column(db.JSON, nullable=False, default=list)
    participant_count = db.Column(db.Integer, nullable=False, default=0)
    computed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "albums": self.data or [],
            "participant_count": self.participant_count,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }


def ensure_system_user():
    """Ensure a non-interactive system user exists for anonymous data."""
    from sqlalchemy.exc import IntegrityError

    try:
        system = User.query.filter_by(email=SYSTEM_USER_EMAIL).first()
        if system:
            return system
        system = User(email=SYSTEM_USER_EMAIL, is_active=False, is_system=True)
        # Generate an irreversible password to avoid interactive login
        system.set_password(os.urandom(32).hex())
        db.session.add(system)
        db.session.commit()
        return system
    except IntegrityError:
        db.session.rollback()
        return User.query.filter_by(email=SYSTEM_USER_EMAIL).first()


def get_system_user_id() -> int:
    system = ensure_system_user()
    if system is None:
        raise RuntimeError("System user could not be created")
    return system.id


def initialize_database(app):
    """
    Initializes the SQLAlchemy extension with the Flask app instance
    and creates all database tables if they don't already exist.
    """
    db.init_app(app)
    instance_path = app.instance_path
    if not os.path.exists(instance_path):
        os.makedirs(instance_path)
        logger.info("Created instance folder: %s", instance_path)

    # Ensure the directory for the configured SQLite file exists
    try:
        uri = app.config.get('SQLALCHEMY_DATABASE_URI')
        if uri:
            url = make_url(uri)
            # Only handle file-based SQLite (not :memory:)
            if url.get_backend_name() == 'sqlite' and url.database and url.database != ':memory:':
                db_dir = os.path.dirname(url.database)
                if db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    logger.info("Created SQLite DB directory: %s", db_dir)
    except Exception as e:
        # Don't block app startup on path parsing issues; log and continue
        logger.warning("Could not ensure SQLite directory exists: %s", e)

    with app.app_context():
        db.create_all()
        logger.info("Database tables created or already exist.")
        ensure_system_user()
