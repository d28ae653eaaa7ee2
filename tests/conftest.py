import os

import pytest

from peerdrop.avails import const


@pytest.fixture(autouse=True)
def restore_constants():
    saved = {k: v for k, v in vars(const).items() if k.isupper()}
    yield
    for k, v in saved.items():
        setattr(const, k, v)


@pytest.fixture
def make_file(tmp_path):
    """writes ``size`` random bytes and returns (path, contents)"""

    def _make(size, name="payload.bin"):
        data = os.urandom(size)
        path = tmp_path / name
        path.write_bytes(data)
        return path, data

    return _make
