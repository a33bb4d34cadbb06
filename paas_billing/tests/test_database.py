import pytest
from sqlalchemy import inspect

from paas_billing.core.config import Settings
from paas_billing.core.database import (
    build_engine,
    check_connection,
    create_all_tables,
    drop_all_tables,
    get_database_url,
    init_engine,
    metadata,
)


def test_create_all_tables_is_idempotent(engine):
    create_all_tables(engine)
    tables = set(inspect(engine).get_table_names())
    assert set(metadata.tables) <= tables


def test_drop_all_tables(engine):
    drop_all_tables(engine)
    assert inspect(engine).get_table_names() == []


def test_check_connection(engine):
    assert check_connection(engine)
    assert not check_connection(build_engine("sqlite:////nonexistent-dir/billing.db"))


def test_test_database_url_wins(monkeypatch, test_settings):
    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite:///test.db")
    assert get_database_url(test_settings) == "sqlite:///test.db"


def test_database_url_comes_from_the_given_settings(monkeypatch, test_settings):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    assert get_database_url(test_settings) == test_settings.DATABASE_URL


def test_init_engine_requires_a_url(monkeypatch):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    with pytest.raises(ValueError, match="DATABASE_URL is not configured"):
        init_engine(Settings(_env_file=None, DATABASE_URL=None))
