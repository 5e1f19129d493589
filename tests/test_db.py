from sqlalchemy import inspect

from app import create_app
from create_admin import main as create_admin
from db import main
from models import User, db


def _usernames(db_uri):
    app = create_app({'SQLALCHEMY_DATABASE_URI': db_uri})
    with app.app_context():
        return [u.username for u in User.query.all()]


def test_creates_tables(tmp_path, capsys):
    db_uri = f"sqlite:///{tmp_path / 'fresh.db'}"

    assert main(['--db-uri', db_uri]) == 0

    assert 'Initialized database' in capsys.readouterr().out
    app = create_app({'SQLALCHEMY_DATABASE_URI': db_uri})
    with app.app_context():
        assert {'users', 'books', 'borrowings'} <= set(inspect(db.engine).get_table_names())


def test_rerun_keeps_data_and_reset_clears_it(tmp_path, capsys):
    db_uri = f"sqlite:///{tmp_path / 'kept.db'}"
    create_admin(['-u', 'admin', '-e', 'admin@library.test', '--db-uri', db_uri])

    main(['--db-uri', db_uri])
    assert _usernames(db_uri) == ['admin']

    main(['--reset', '--db-uri', db_uri])
    assert 'Dropped all tables' in capsys.readouterr().out
    assert _usernames(db_uri) == []
