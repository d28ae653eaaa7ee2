import asyncio
import os

import pytest

from peerdrop.avails import const
from peerdrop.conduit import DownloadsPersister


@pytest.mark.asyncio
async def test_saved_under_its_name(tmp_path):
    persister = DownloadsPersister(tmp_path)
    path = await persister.persist("t1", b"hello", {"name": "notes.txt"})
    assert path == tmp_path / "notes.txt"
    assert path.read_bytes() == b"hello"
    assert persister.get("t1") == path
    assert os.listdir(tmp_path) == ["notes.txt"]


@pytest.mark.asyncio
async def test_same_named_transfers_saved_side_by_side(tmp_path):
    persister = DownloadsPersister(tmp_path)
    first, second = os.urandom(4 * 1024 * 1024), os.urandom(4 * 1024 * 1024)
    paths = await asyncio.gather(
        persister.persist("t1", first, {"name": "report.pdf"}),
        persister.persist("t2", second, {"name": "report.pdf"}),
    )
    assert sorted(p.name for p in paths) == ["report (1).pdf", "report.pdf"]
    assert {persister.get("t1").read_bytes(), persister.get("t2").read_bytes()} == {first, second}
    assert not [name for name in os.listdir(tmp_path) if name.endswith(const.FILE_ERROR_EXT)]


@pytest.mark.asyncio
async def test_leftover_temp_file_does_not_block(tmp_path):
    (tmp_path / f"report.pdf{const.FILE_ERROR_EXT}").write_bytes(b"from an earlier run")
    persister = DownloadsPersister(tmp_path)
    path = await persister.persist("t1", b"fresh", {"name": "report.pdf"})
    assert path == tmp_path / "report.pdf"
    assert path.read_bytes() == b"fresh"


@pytest.mark.asyncio
async def test_existing_file_is_not_overwritten(tmp_path):
    (tmp_path / "a.bin").write_bytes(b"mine")
    persister = DownloadsPersister(tmp_path)
    path = await persister.persist("t1", b"theirs", {"name": "a.bin"})
    assert path.name == "a (1).bin"
    assert (tmp_path / "a.bin").read_bytes() == b"mine"


@pytest.mark.asyncio
async def test_directory_parts_stripped(tmp_path):
    persister = DownloadsPersister(tmp_path / "downloads")
    path = await persister.persist("t1", b"x", {"name": "../../etc/passwd"})
    assert path == tmp_path / "downloads" / "passwd"
