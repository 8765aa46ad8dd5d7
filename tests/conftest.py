import pytest

from hgd import db
from hgd.settings import Settings

from fakes import FakeController, FakeImageSource


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "hgd.db")))
    db.init_db()
    return tmp_path / "hgd.db"


@pytest.fixture
def image_source():
    return FakeImageSource()


@pytest.fixture
def controller():
    c = FakeController()
    c.seed("staging")
    return c
