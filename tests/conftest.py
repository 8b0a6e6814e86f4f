"""
Shared fixtures for the carddav_sync test suite.
"""

import logging

import pytest

from carddav_sync.storage.db import SyncDatabase
from carddav_sync.storage.people import PeopleStore
from carddav_sync.storage.staging import StagingStore
from carddav_sync.utils.logging import LOGGER_NAME


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = SyncDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def people(db):
    return PeopleStore(db)


@pytest.fixture
def staging(db):
    return StagingStore(db)


@pytest.fixture
def connection_id(db):
    """A registered connection owned by alice."""
    db.upsert_connection(
        connection_id="home",
        user_id="alice",
        server_url="https://dav.example.com",
        address_book_url="https://dav.example.com/addressbooks/alice/contacts/",
        username="alice",
    )
    return "home"


@pytest.fixture
def make_vcard():
    """Factory for small vCard 3.0 texts."""

    def _make(uid=None, given="Alice", family="Smith", extra=()):
        lines = ["BEGIN:VCARD", "VERSION:3.0"]
        if uid is not None:
            lines.append(f"UID:{uid}")
        lines.append(f"FN:{given} {family}")
        lines.append(f"N:{family};{given};;;")
        lines.extend(extra)
        lines.append("END:VCARD")
        return "\r\n".join(lines) + "\r\n"

    return _make


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so log capture works in later tests."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.disabled = False
    logger.setLevel(logging.NOTSET)
