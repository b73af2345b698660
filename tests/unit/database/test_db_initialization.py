import os

import pytest
from flask import Flask


@pytest.mark.unit
def test_initialize_database_creates_sqlite_directory_and_system_user(tmp_path):
    from ranksync.database.db_manager import RankedList, User, db, initialize_database

    target_dir = tmp_path / "nested" / "dbdir"
    uri = f"sqlite:///{target_dir / 'test.db'}".replace("\\", "/")

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.instance_path = str(tmp_path / "instance")

    initialize_database(app)

    assert target_dir.exists()
    with app.app_context():
        assert db.session.query(RankedList).count() == 0
        system = User.query.filter_by(is_system=True).one()
        assert system.is_active is False
        db.session.remove()
        db.engine.dispose()


@pytest.mark.unit
def test_initialize_database_in_memory_only_creates_instance_dir(tmp_path, monkeypatch):
    from ranksync.database.db_manager import initialize_database

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    instance_dir = tmp_path / "instance"
    app.instance_path = str(instance_dir)

    calls = []
    real_makedirs = os.makedirs

    def tracing_makedirs(path, *args, **kwargs):
        calls.append(os.path.abspath(path))
        return real_makedirs(path, *args, **kwargs)

    monkeypatch.setattr(os, "makedirs", tracing_makedirs)

    initialize_database(app)

    assert instance_dir.exists()
    assert calls == [os.path.abspath(str(instance_dir))]
