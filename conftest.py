import os
import pytest

from library import Library

@pytest.fixture
def db_file(tmp_path, monkeypatch):
    # A separate database file per test; commands that build their own
    # Library() pick it up through LIBRARY_DB_FILE
    path = str(tmp_path / "library_test.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", path)
    return path

@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file)
    yield lib
    try:
        lib.close()
    except Exception:
        pass
    if os.path.exists(db_file):
        os.remove(db_file)
