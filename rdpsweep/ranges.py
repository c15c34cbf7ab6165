"""Sorted lists of inclusive integer ranges (IPv4 addresses or ports).

Targets are kept as a sorted, non-overlapping list of ranges so that a
scan can walk every address with a single increasing index, and so that
exclusions can be applied to the whole list in one linear pass.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from itertools import accumulate
from typing import Iterator

_MAX_VALUE = 0xFFFFFFFF


@dataclass(frozen=True)
class Range:
    """An inclusive range ``[begin, end]``; invalid when ``begin > end``."""

    begin: int
    end: int

    def is_valid(self) -> bool:
        """True when the range holds at least one number."""
        return self.begin <= self.end


INVALID_RANGE = Range(2, 1)


def _overlaps(lhs: Range, rhs: Range) -> bool:
    """True when the two ranges overlap or touch end to end."""
    if lhs.begin < rhs.begin and (lhs.end == _MAX_VALUE or lhs.end + 1 >= rhs.begin):
        return True
    if lhs.begin >= rhs.begin and lhs.end <= rhs.end:
        return True
    if rhs.begin < lhs.begin and (rhs.end == _MAX_VALUE or rhs.end + 1 >= lhs.begin):
        return True
    if rhs.begin >= lhs.begin and rhs.end <= lhs.end:
        return True
    return False


def _apply_exclude(exclude: Range, target: Range) -> tuple[Range, Range]:
    """Cut ``exclude`` out of ``target``; return the low part and any high split."""
    if target.begin > exclude.end or target.end < exclude.begin:
        return target, INVALID_RANGE
    if target.begin >= exclude.begin and target.end <= exclude.end:
        return INVALID_RANGE, INVALID_RANGE
    if target.begin >= exclude.begin and target.end > exclude.end:
        return Range(exclude.end + 1, target.end), INVALID_RANGE
    if target.begin < exclude.begin and target.end <= exclude.end:
        return Range(target.begin, exclude.begin - 1), INVALID_RANGE
    return Range(target.begin, exclude.begin - 1), Range(exclude.end + 1, target.end)


def _check_bounds(begin: int, end: int) -> None:
    if not (0 <= begin <= _MAX_VALUE and 0 <= end <= _MAX_VALUE):
        raise ValueError(f"range {begin}-{end} is outside 0..{_MAX_VALUE}")
    if begin > end:
        raise ValueError(f"range begins at {begin}, after its end {end}")


class RangeList:
    """A list of ranges, kept sorted and coalesced on demand."""

    def __init__(self) -> None:
        self._ranges: list[Range] = []
        self._is_sorted = False
        self._picker: list[int] | None = None

    def __iter__(self) -> Iterator[Range]:
        return iter(self._ranges)

    def __repr__(self) -> str:
        inner = ", ".join(f"{r.begin}-{r.end}" for r in self._ranges)
        return f"RangeList([{inner}])"

    @property
    def ranges(self) -> tuple[Range, ...]:
        """The ranges in their current order."""
        return tuple(self._ranges)

    @property
    def is_sorted(self) -> bool:
        """True when the list is known to be sorted and coalesced."""
        return self._is_sorted

    def add_range(self, begin: int, end: int) -> None:
        """Append a range, folding it into the last one when they overlap."""
        _check_bounds(begin, end)
        self._add(Range(begin, end))

    def _add(self, new: Range) -> None:
        self._picker = None
        if not self._ranges:
            self._ranges.append(new)
            self._is_sorted = True
            return
        last = self._ranges[-1]
        if _overlaps(last, new):
            self._ranges[-1] = Range(min(last.begin, new.begin), max(last.end, new.end))
        else:
            self._ranges.append(new)
        self._is_sorted = False

    def contains(self, addr: int) -> bool:
        """True when some range holds ``addr``."""
        return any(r.begin <= addr <= r.end for r in self._ranges)

    def sort(self) -> None:
        """Sort by start and combine overlapping or touching ranges."""
        if not self._ranges:
            self._is_sorted = True
            return
        if self._is_sorted:
            return
        ordered = sorted(self._ranges, key=lambda r: r.begin)
        self._ranges = []
        for r in ordered:
            self._add(r)
        self._is_sorted = True

    def merge(self, other: RangeList) -> None:
        """Add every range of ``other`` to this list, then sort."""
        for r in other:
            self._add(r)
        self.sort()

    def remove_range(self, begin: int, end: int) -> None:
        """Remove ``[begin, end]`` from every range it touches."""
        _check_bounds(begin, end)
        cut = Range(begin, end)
        kept: list[Range] = []
        high_parts: list[Range] = []
        for r in self._ranges:
            if not _overlaps(r, cut):
                kept.append(r)
                continue
            if begin <= r.begin and end >= r.end:
                continue
            if begin > r.begin and end < r.end:
                kept.append(Range(r.begin, begin - 1))
                high_parts.append(Range(end + 1, r.end))
                continue
            new_begin, new_end = r.begin, r.end
            if r.begin <= end < r.end:
                new_begin = end + 1
            if r.begin < begin <= r.end:
                new_end = begin - 1
            kept.append(Range(new_begin, new_end))
        self._ranges = kept
        self._picker = None
        for part in high_parts:
            self._add(part)

    def exclude(self, excludes: RangeList) -> None:
        """Remove from this list everything that is also in ``excludes``."""
        self.sort()
        if not excludes.is_sorted:
            sorted_excludes = RangeList()
            sorted_excludes.merge(excludes)
            excludes = sorted_excludes
        cuts = excludes._ranges
        result = RangeList()
        x = 0
        for current in self._ranges:
            while x < len(cuts) and cuts[x].end < current.begin:
                x += 1
            while x < len(cuts) and cuts[x].begin <= current.end:
                current, split = _apply_exclude(cuts[x], current)
                if split.is_valid():
                    result._add(current)
                    current = split
                if cuts[x].begin > current.end:
                    break
                x += 1
            if current.is_valid():
                result._add(current)
        self._ranges = result._ranges
        self._picker = None
        self._is_sorted = True

    def count(self) -> int:
        """Total number of values covered by all ranges."""
        return sum(r.end - r.begin + 1 for r in self._ranges)

    def pick(self, index: int) -> int:
        """Return the value at position ``index`` across the concatenated ranges."""
        if not self._is_sorted:
            self.sort()
        if not 0 <= index < self.count():
            raise IndexError(f"index {index} is out of range")
        if self._picker is not None:
            i = bisect_right(self._picker, index) - 1
            return self._ranges[i].begin + (index - self._picker[i])
        for r in self._ranges:
            size = r.end - r.begin + 1
            if index < size:
                return r.begin + index
            index -= size
        raise IndexError("index is out of range")

    def optimize(self) -> None:
        """Precompute offsets so that :meth:`pick` uses a binary search."""
        self.sort()
        sizes = [r.end - r.begin + 1 for r in self._ranges]
        self._picker = list(accumulate(sizes, initial=0))[:-1]

    def clear(self) -> None:
        """Remove every range."""
        self._ranges = []
        self._picker = None
        self._is_sorted = False