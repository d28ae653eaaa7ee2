from peerdrop.avails.exceptions import NameConflict, RecipientUnknown
from peerdrop.relay import logger as _logger


class IdentityRegistry:
    """name <-> connection, both directions

    A connection holds at most one name, registering again under a new name releases the old one.
    """
    __slots__ = '_by_name', '_by_connection'

    def __init__(self):
        self._by_name = {}
        self._by_connection = {}

    def register(self, connection, name):
        """
        Raises:
            ValueError: if ``name`` is empty
            NameConflict: if ``name`` is held by another connection
        """
        if not name:
            raise ValueError("username must not be empty")

        holder = self._by_name.get(name)
        if holder is not None and holder is not connection:
            raise NameConflict(f"{name} is already taken")

        previous = self._by_connection.get(connection)
        if previous is not None and previous != name:
            del self._by_name[previous]
            _logger.info(f"[RELAY] {previous} renamed to {name}")

        self._by_name[name] = connection
        self._by_connection[connection] = name

    def deregister(self, connection):
        """
        Returns:
            str | None: the name released, if any
        """
        name = self._by_connection.pop(connection, None)
        if name is not None:
            self._by_name.pop(name, None)
        return name

    def get(self, name):
        if name is None:
            return None
        return self._by_name.get(name)

    def resolve(self, name):
        """
        Raises:
            RecipientUnknown: if nothing is registered under ``name``
        """
        connection = self.get(name)
        if connection is None:
            raise RecipientUnknown(name)
        return connection

    def name_of(self, connection):
        return self._by_connection.get(connection)

    def list_others(self, excluding=None):
        return [name for name in self._by_name if name != excluding]

    def names(self):
        return list(self._by_name)

    def connections(self):
        return list(self._by_connection.items())

    def __contains__(self, name):
        return name in self._by_name

    def __len__(self):
        return len(self._by_name)
