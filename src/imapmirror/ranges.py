from __future__ import annotations

from typing import Iterable, Iterator, List, Sequence, Tuple, Union

Span = Tuple[int, int]
Compressed = List[Union[int, Span]]


def _canonical(spans: Iterable[Span]) -> Tuple[Span, ...]:
    ordered = sorted((lo, hi) for lo, hi in spans if lo <= hi)
    out: List[Span] = []
    for lo, hi in ordered:
        if lo < 0:
            raise ValueError(f"Range members must be non-negative, got {lo}")
        if out and lo <= out[-1][1] + 1:
            prev_lo, prev_hi = out[-1]
            out[-1] = (prev_lo, max(prev_hi, hi))
        else:
            out.append((lo, hi))
    return tuple(out)


class Range:
    """
    An ordered, compressed set of integers (article UIDs).

    Internally a tuple of disjoint, non-adjacent closed spans sorted
    ascending, so two Ranges are equal exactly when they hold the same
    integers.
    """

    __slots__ = ("_spans",)

    def __init__(self, spans: Iterable[Span] = ()) -> None:
        self._spans = _canonical(spans)

    # -----------------------
    # Constructors
    # -----------------------

    @classmethod
    def from_ints(cls, values: Iterable[int]) -> "Range":
        return cls((v, v) for v in values)

    @classmethod
    def span(cls, lo: int, hi: int) -> "Range":
        return cls([(lo, hi)])

    @classmethod
    def from_compressed(cls, items: Sequence[Union[int, Sequence[int]]]) -> "Range":
        spans: List[Span] = []
        for item in items:
            if isinstance(item, int):
                spans.append((item, item))
            else:
                lo, hi = item
                spans.append((int(lo), int(hi)))
        return cls(spans)

    @classmethod
    def parse(cls, text: str) -> "Range":
        """Parse an IMAP sequence set such as ``1:4,7,9:10``."""
        spans: List[Span] = []
        text = (text or "").strip()
        if not text:
            return cls()
        for piece in text.split(","):
            piece = piece.strip()
            if not piece:
                continue
            if ":" in piece:
                a, b = piece.split(":", 1)
                lo, hi = int(a), int(b)
                spans.append((min(lo, hi), max(lo, hi)))
            else:
                v = int(piece)
                spans.append((v, v))
        return cls(spans)

    # -----------------------
    # Views
    # -----------------------

    @property
    def spans(self) -> Tuple[Span, ...]:
        return self._spans

    @property
    def first(self) -> int:
        if not self._spans:
            raise ValueError("empty Range has no first member")
        return self._spans[0][0]

    @property
    def last(self) -> int:
        if not self._spans:
            raise ValueError("empty Range has no last member")
        return self._spans[-1][1]

    def compressed(self) -> Compressed:
        """Singletons as ints, longer runs as (lo, hi) tuples."""
        return [lo if lo == hi else (lo, hi) for lo, hi in self._spans]

    def to_imap(self) -> str:
        return ",".join(str(lo) if lo == hi else f"{lo}:{hi}" for lo, hi in self._spans)

    def __iter__(self) -> Iterator[int]:
        for lo, hi in self._spans:
            yield from range(lo, hi + 1)

    def __len__(self) -> int:
        return sum(hi - lo + 1 for lo, hi in self._spans)

    def __bool__(self) -> bool:
        return bool(self._spans)

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, int):
            return False
        for lo, hi in self._spans:
            if value < lo:
                return False
            if value <= hi:
                return True
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Range):
            return NotImplemented
        return self._spans == other._spans

    def __hash__(self) -> int:
        return hash(self._spans)

    def __repr__(self) -> str:
        return f"Range({self.to_imap() or '<empty>'})"

    # -----------------------
    # Set operations
    # -----------------------

    def union(self, other: "Range") -> "Range":
        return Range(self._spans + other._spans)

    def intersection(self, other: "Range") -> "Range":
        out: List[Span] = []
        a, b = self._spans, other._spans
        i = j = 0
        while i < len(a) and j < len(b):
            lo = max(a[i][0], b[j][0])
            hi = min(a[i][1], b[j][1])
            if lo <= hi:
                out.append((lo, hi))
            if a[i][1] < b[j][1]:
                i += 1
            else:
                j += 1
        return Range(out)

    def difference(self, other: "Range") -> "Range":
        out: List[Span] = []
        cut = other._spans
        j = 0
        for lo, hi in self._spans:
            cur = lo
            while j < len(cut) and cut[j][1] < cur:
                j += 1
            k = j
            while k < len(cut) and cut[k][0] <= hi:
                c_lo, c_hi = cut[k]
                if c_lo > cur:
                    out.append((cur, c_lo - 1))
                cur = max(cur, c_hi + 1)
                if cur > hi:
                    break
                k += 1
            if cur <= hi:
                out.append((cur, hi))
        return Range(out)

    def clip(self, lo: int, hi: int) -> "Range":
        return self.intersection(Range.span(lo, hi))

    def complement(self, lo: int, hi: int) -> "Range":
        """Members of [lo, hi] not in this Range."""
        return Range.span(lo, hi).difference(self)

    __or__ = union
    __and__ = intersection
    __sub__ = difference
