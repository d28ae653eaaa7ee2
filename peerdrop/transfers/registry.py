from collections import deque

from peerdrop.avails.exceptions import InvalidStateError
from peerdrop.transfers._logger import logger as _logger


class TransferRegistry:
    """Active transfer handles keyed by transfer id, for both roles and both modes

    Every handle carries its :class:`peerdrop.transfers.Transfer` as ``handle.transfer``.
    Retired ids are remembered (bounded) so that late chunk or control messages
    bearing them are recognised and dropped instead of recreating a context.
    """
    __slots__ = '_active', '_retired', '_retired_order'

    def __init__(self, remember_retired=4096):
        self._active = {}
        self._retired = set()
        self._retired_order = deque(maxlen=remember_retired)

    def add(self, handle):
        transfer_id = handle.transfer.id
        if transfer_id in self._active or transfer_id in self._retired:
            raise InvalidStateError(f"transfer {transfer_id} already seen")
        self._active[transfer_id] = handle
        _logger.debug(f"[REGISTRY] added {transfer_id} ({handle.transfer.role.name}, {handle.transfer.mode})")
        return handle

    def get(self, transfer_id):
        return self._active.get(transfer_id)

    def retire(self, transfer_id):
        """Remove from the active set, the id is remembered as seen"""
        handle = self._active.pop(transfer_id, None)
        if transfer_id not in self._retired:
            if len(self._retired_order) == self._retired_order.maxlen:
                self._retired.discard(self._retired_order[0])
            self._retired_order.append(transfer_id)
            self._retired.add(transfer_id)
        if handle is not None:
            _logger.debug(f"[REGISTRY] retired {transfer_id} in state {handle.transfer.status.name}")
        return handle

    def is_retired(self, transfer_id):
        return transfer_id in self._retired

    def is_known(self, transfer_id):
        return transfer_id in self._active or transfer_id in self._retired

    def active(self, peer=None):
        handles = list(self._active.values())
        if peer is None:
            return handles
        return [h for h in handles if h.transfer.peer == peer]

    def unfinished(self, peer=None, mode=None):
        """Handles not yet terminal, these fail when their peer or channel goes away"""
        return [
            h for h in self.active(peer)
            if not h.transfer.status.is_terminal and (mode is None or h.transfer.mode == mode)
        ]

    def snapshot(self):
        """Plain dicts of every active transfer, no chunk data"""
        return [h.transfer.as_dict() for h in self._active.values()]

    def __contains__(self, transfer_id):
        return transfer_id in self._active

    def __len__(self):
        return len(self._active)

    def __iter__(self):
        return iter(list(self._active.values()))
