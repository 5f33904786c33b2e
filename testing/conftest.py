"""
Shared fixtures for the card conversion tests.

Persistence uses an in-memory SQLite database and a temporary storage root.
"""

import pytest

from cardsmith.db.database import create_db_engine, create_session_factory, init_db
from cardsmith.repositories.card_repository import CardRepository
from cardsmith.services.asset_storage import AssetStorage
from cardsmith.services.character_cards.card_exporter import CharacterCardExporter
from cardsmith.services.character_cards.card_importer import CharacterCardImporter
from cardsmith.services.character_cards.handlers.registry import create_default_registry
from cardsmith.services.conversion_service import CardConversionService


@pytest.fixture
def db_session():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    session = create_session_factory(engine)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def storage(tmp_path):
    return AssetStorage(tmp_path / "storage")


@pytest.fixture
def repository(db_session):
    return CardRepository(db_session)


@pytest.fixture
def registry():
    return create_default_registry()


@pytest.fixture
def service(repository, storage, registry):
    importer = CharacterCardImporter(registry, repository, storage)
    exporter = CharacterCardExporter(registry, repository, storage)
    return CardConversionService(repository, storage, registry, importer, exporter)
