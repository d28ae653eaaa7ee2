import asyncio
import os
import threading
from pathlib import Path

from peerdrop.avails import const, use
from peerdrop.conduit import logger
from peerdrop.conduit.abc import AbstractPersister
from peerdrop.transfers.fileobject import FileItem, safe_name, validatename


class DownloadsPersister(AbstractPersister):
    """Writes completed files into the download directory

    contents go to ``<name>.<unique id><FILE_ERROR_EXT>`` first and are renamed once fully written,
    so a half written file is never mistaken for a complete one and same named downloads never share a temp file
    """

    def __init__(self, download_path=None):
        self.download_path = Path(download_path or const.PATH_DOWNLOAD)
        self.saved = {}
        self._naming_lock = threading.Lock()

    async def persist(self, transfer_id, data, metadata):
        path = await asyncio.to_thread(self._write, safe_name(metadata.get("name", "download")), data)
        self.saved[transfer_id] = path
        logger.info(f"[PERSIST] {transfer_id} saved to {path}")
        return path

    def _write(self, name, data):
        os.makedirs(self.download_path, exist_ok=True)
        temp_path = Path(self.download_path, f"{name}.{use.get_unique_id(str)}{const.FILE_ERROR_EXT}")
        with open(temp_path, "xb") as fp:
            fp.write(data)

        file_item = FileItem(temp_path, size=len(data))
        with self._naming_lock:
            while True:
                file_item.original_name = validatename(name, self.download_path)
                try:
                    file_item.remove_error_ext()
                    return file_item.path
                except FileExistsError:
                    # taken by someone outside this persister meanwhile
                    continue

    def get(self, transfer_id):
        return self.saved.get(transfer_id)


class MemoryPersister(AbstractPersister):
    """Keeps completed artifacts in memory, retrievable by transfer id"""

    def __init__(self):
        self.artifacts = {}

    async def persist(self, transfer_id, data, metadata):
        self.artifacts[transfer_id] = (bytes(data), dict(metadata))

    def get(self, transfer_id):
        return self.artifacts.get(transfer_id)

    def data_of(self, transfer_id):
        return self.artifacts[transfer_id][0]
