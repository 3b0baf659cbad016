from typing import Iterable, NamedTuple, Optional

from .models import FREE_INDEX


class Pattern(NamedTuple):
    name: str
    cells: frozenset[int]


def _p(name: str, *cells: int) -> Pattern:
    return Pattern(name, frozenset(cells))


# Order is the tie-break: the first satisfied pattern is the one reported.
BASE_PATTERNS: tuple[Pattern, ...] = (
    _p("Top Row", 0, 1, 2, 3, 4),
    _p("Second Row", 5, 6, 7, 8, 9),
    _p("Third Row", 10, 11, 12, 13, 14),
    _p("Fourth Row", 15, 16, 17, 18, 19),
    _p("Bottom Row", 20, 21, 22, 23, 24),
    _p("Left Column", 0, 5, 10, 15, 20),
    _p("Second Column", 1, 6, 11, 16, 21),
    _p("Third Column", 2, 7, 12, 17, 22),
    _p("Fourth Column", 3, 8, 13, 18, 23),
    _p("Right Column", 4, 9, 14, 19, 24),
    _p("Main Diagonal", 0, 6, 12, 18, 24),
    _p("Anti Diagonal", 4, 8, 12, 16, 20),
    _p("Four Corners", 0, 4, 20, 24),
)

# "Middle Row" duplicates "Third Row" and can never be reported first.
EXTENDED_PATTERNS: tuple[Pattern, ...] = BASE_PATTERNS + (
    _p("Center Cross", 2, 6, 12, 18, 22),
    _p("Middle Row", 10, 11, 12, 13, 14),
)

CATALOGS = {
    "base": BASE_PATTERNS,
    "extended": EXTENDED_PATTERNS,
}


def catalog(name: str) -> tuple[Pattern, ...]:
    try:
        return CATALOGS[name]
    except KeyError:
        raise ValueError(f"Unknown pattern catalog {name!r}; expected one of {sorted(CATALOGS)}") from None


def evaluate(marked: Iterable[int], patterns: tuple[Pattern, ...] = BASE_PATTERNS) -> Optional[str]:
    """Return the name of the first satisfied pattern, or None.

    The free cell counts as marked whether or not it is in ``marked``.
    """
    stamped = set(marked)
    stamped.add(FREE_INDEX)
    for pattern in patterns:
        if pattern.cells <= stamped:
            return pattern.name
    return None
