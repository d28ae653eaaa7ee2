import mimetypes
from pathlib import Path

from peerdrop.avails import const, use
from peerdrop.transfers import TransferMode

DEFAULT_MIME_TYPE = "application/octet-stream"


def stringify_size(size):
    sizes = ['B', 'KB', 'MB', 'GB', 'TB']
    index = 0
    while size >= 1024 and index < len(sizes) - 1:
        size /= 1024
        index += 1
    return f"{size:.2f} {sizes[index]}"


def chunk_size_for(mode):
    """Fixed step used by the sender, larger for relayed to cut per-envelope overhead"""
    if TransferMode.parse(mode) is TransferMode.RELAYED:
        return const.CHUNK_SIZE_RELAYED
    return const.CHUNK_SIZE_DIRECT


class FileItem:
    """Designed to represent a file with its metadata

    Such as name, size, mime type and path.

    Attributes:
        __slots__: Used for memory optimization, defining the attributes the class can have.
        _name: The name of the file.
        size: The size of the file in bytes.
        path: The Path object representing the file's path.
        mime_type: guessed from the file name, falls back to ``application/octet-stream``
        original_name: Preserves the original file name for potential renaming.

    Note:
        remove_error_ext renames a file written under an error extension back to ``original_name``.

    """
    __slots__ = '_name', 'size', 'path', 'mime_type', 'original_name'

    def __init__(self, path, size=None, mime_type=None):
        """Initializes the file object, fetching its size from the filesystem when not given.

        Args:
            path(Path): file path to operate with during transfer
            size(int): known size, looked up with ``stat`` if omitted
            mime_type(str): known mime type, guessed if omitted
        """
        self.path: Path = Path(path)
        self._name = self.path.name
        if size is None:
            size = self.path.stat().st_size
        self.size = size
        self.mime_type = mime_type or mimetypes.guess_type(self._name)[0] or DEFAULT_MIME_TYPE

    @property
    def name(self):
        return self._name

    @name.setter
    def name(self, value):
        self._name = value
        self.path = self.path.with_name(self._name)

    def __iter__(self):
        return iter((self.name, self.size, self.mime_type))

    def __str__(self):
        size_str = stringify_size(self.size)
        name_str = f"...{self._name[-20:]}" if len(self._name) > 20 else self._name
        return f"FileItem({name_str}, {size_str}, {use.shorten_path(self.path, 20)})"

    def __repr__(self):
        return f"FileItem(name={self.name[:10]}, size={self.size}, type={self.mime_type})"

    def remove_error_ext(self):
        """
        Removes the error extension from the file name,
        restoring it to its original name, renames the file path.

        Raises:
            ValueError: if original_name was never set
            FileExistsError: if a file with the original name showed up meanwhile
        """
        if not hasattr(self, 'original_name'):
            raise ValueError("Original name is not set; cannot remove error extension.")

        original_path = self.path.with_name(self.original_name)
        if original_path.exists():
            raise FileExistsError(f"The original file {original_path} already exists.")

        self.path.rename(original_path)
        self.path = original_path
        self._name = original_path.name


def safe_name(name):
    """Strips directory parts a remote peer may have put into a file name"""
    cleaned = Path(str(name).replace("\\", "/")).name.strip()
    if cleaned in ("", ".", ".."):
        return "download"
    return cleaned


def validatename(name, root_path) -> str:
    """
    Ensures a unique filename if a file with the same name already exists
    in the `root_path`

    Args:
        name (str): The original filename.
        root_path(Path): Directory path to validate with

    Returns:
        str: The validated filename, ensuring uniqueness.
    """

    original_path = Path(name)
    base = original_path.stem
    ext = original_path.suffix
    new_file_name = original_path.name

    counter = 1
    while (Path(root_path) / new_file_name).exists():
        new_file_name = f"{base} ({counter}){ext}"
        counter += 1

    return new_file_name
