from tqdm import tqdm

from peerdrop.conduit.abc import AbstractProgressReporter


class NullProgress(AbstractProgressReporter):
    __slots__ = ()

    def report_progress(self, transfer_id, percent, bytes_transferred):
        pass


class TqdmProgress(AbstractProgressReporter):
    """One tqdm bar per transfer, counting bytes

    bars are created lazily on the first report, ``setup`` gives them a proper total and prefix
    """

    def __init__(self, leave=False, disable=None):
        self.leave = leave
        self.disable = disable
        self.bars = {}
        self._current = {}

    def setup(self, transfer_id, prefix, total):
        self.close(transfer_id)
        self.bars[transfer_id] = tqdm(
            total=total,
            desc=prefix,
            unit='B',
            unit_scale=True,
            unit_divisor=1024,
            leave=self.leave,
            disable=self.disable,
        )
        self._current[transfer_id] = 0

    def report_progress(self, transfer_id, percent, bytes_transferred):
        if transfer_id not in self.bars:
            self.setup(transfer_id, transfer_id[:8], None)
        bar = self.bars[transfer_id]
        bar.update(bytes_transferred - self._current[transfer_id])
        self._current[transfer_id] = bytes_transferred

    def close(self, transfer_id):
        bar = self.bars.pop(transfer_id, None)
        self._current.pop(transfer_id, None)
        if bar is not None:
            bar.close()
