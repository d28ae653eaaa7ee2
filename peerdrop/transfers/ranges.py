import bisect


class CoveredRanges:
    """Union of half open byte ranges ``[start, end)`` received so far

    Kept as a sorted list of disjoint, non-adjacent intervals, so merging is idempotent under
    duplicates and independent of the order ranges arrive in.

    Example:
        >>> r = CoveredRanges()
        >>> r.add(4, 8); r.add(0, 4); r.add(2, 6)
        4
        4
        0
        >>> list(r), r.covered
        ([(0, 8)], 8)
    """
    __slots__ = '_starts', '_ends', 'covered'

    def __init__(self):
        self._starts = []
        self._ends = []
        self.covered = 0

    def add(self, start, end):
        """Merge ``[start, end)`` into the set

        Returns:
            int: number of bytes that were not covered before
        """
        if end <= start:
            return 0

        # first interval whose end touches or passes start
        lo = bisect.bisect_left(self._ends, start)
        # first interval starting strictly after end
        hi = bisect.bisect_right(self._starts, end)

        new_start, new_end = start, end
        absorbed = 0
        if lo < hi:
            new_start = min(start, self._starts[lo])
            new_end = max(end, self._ends[hi - 1])
            absorbed = sum(e - s for s, e in zip(self._starts[lo:hi], self._ends[lo:hi]))

        self._starts[lo:hi] = [new_start]
        self._ends[lo:hi] = [new_end]

        added = (new_end - new_start) - absorbed
        self.covered += added
        return added

    def is_complete(self, size):
        """True iff the union is exactly ``[0, size)``"""
        if size == 0:
            return not self._starts
        return len(self._starts) == 1 and self._starts[0] == 0 and self._ends[0] == size

    def contains(self, start, end):
        i = bisect.bisect_right(self._starts, start) - 1
        return i >= 0 and self._ends[i] >= end

    def gaps(self, size):
        """Yields uncovered ``(start, end)`` ranges inside ``[0, size)``"""
        cursor = 0
        for s, e in self:
            if s > cursor:
                yield cursor, min(s, size)
            cursor = max(cursor, e)
        if cursor < size:
            yield cursor, size

    def clear(self):
        self._starts.clear()
        self._ends.clear()
        self.covered = 0

    def __iter__(self):
        return zip(self._starts, self._ends)

    def __len__(self):
        return len(self._starts)

    def __repr__(self):
        return f"CoveredRanges({list(self)}, covered={self.covered})"
