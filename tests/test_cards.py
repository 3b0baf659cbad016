import pytest

from backend.cards import FREE_LABEL, clean_title, demo_card, generate, label_for
from backend.errors import InsufficientPoolError
from backend.models import Track

from conftest import make_pool, make_track


def test_generate_layout(pool):
    card = generate(pool)
    assert len(card.cells) == 25
    assert [c.index for c in card.cells] == list(range(25))
    assert card.tracks == tuple(pool[:24])

    free = card.cells[12]
    assert free.is_free and free.track is None and free.label == FREE_LABEL
    assert [c for c in card.cells if c.is_free] == [free]

    for k, track in enumerate(pool[:24]):
        pos = k if k < 12 else k + 1
        assert card.cells[pos].track == track


def test_generate_labels(pool):
    card = generate(pool)
    assert card.cells[0].label == "Artist 0 - Song 0"
    assert card.cells[13].label == "Artist 12 - Song 12"
    assert all(c.label for c in card.cells)


def test_generate_skips_duplicate_ids():
    pool = make_pool(10) + make_pool(10) + [make_track(i) for i in range(10, 24)]
    card = generate(pool)
    ids = [t.id for t in card.tracks]
    assert len(set(ids)) == 24
    assert ids == [f"track-{i:03d}" for i in range(24)]


def test_generate_does_not_mutate_pool(pool):
    before = list(pool)
    generate(pool)
    assert pool == before


def test_card_ids_are_unique(pool):
    assert generate(pool).id != generate(pool).id


@pytest.mark.parametrize("size", [0, 1, 23])
def test_insufficient_pool(size):
    with pytest.raises(InsufficientPoolError) as exc:
        generate(make_pool(size))
    assert exc.value.required == 24
    assert exc.value.actual == size


def test_insufficient_counts_distinct_only():
    with pytest.raises(InsufficientPoolError) as exc:
        generate(make_pool(20) * 3)
    assert exc.value.actual == 20


@pytest.mark.parametrize(
    "title, expected",
    [
        ("Blinding Lights", "Blinding Lights"),
        ("Stay (feat. Justin Bieber)", "Stay"),
        ("Stay (Featuring Justin Bieber)", "Stay"),
        ("Lean On feat. MØ & DJ Snake", "Lean On"),
        ("Titanium (David Guetta Remix)", "Titanium"),
        ("Hurt (Acoustic Version)", "Hurt"),
        ("Shout (Radio Edit)", "Shout"),
        ("Let It Be (Remastered 2009)", "Let It Be"),
        ("One (feat. X) (Remix)", "One"),
        ("  Spaced Out  ", "Spaced Out"),
        ("Defeat. The Song", "Defeat. The Song"),
    ],
)
def test_clean_title(title, expected):
    assert clean_title(title) == expected


@pytest.mark.parametrize(
    "title",
    ["", "   ", "(Remix)", "(feat. Someone)", "feat. Everyone", "A (B (remix) C)", "(re(edit)mix)", "Plain"],
)
def test_clean_title_idempotent_and_never_empty(title):
    once = clean_title(title)
    assert once
    assert clean_title(once) == once


def test_clean_title_falls_back_to_raw_title():
    assert clean_title("(Remix)") == "(Remix)"
    assert clean_title("") == "Untitled"


def test_label_for():
    track = Track(id="x", title="Levitating (feat. DaBaby)", artist="Dua Lipa")
    assert label_for(track) == "Dua Lipa - Levitating"


def test_demo_card():
    card = demo_card()
    assert len(card.cells) == 25
    assert card.cells[12].is_free
    assert card.cells[0].label == "Taylor Swift - Shake It Off"
    assert len({t.id for t in card.tracks}) == 24
    assert all(t.id.startswith("demo-") for t in card.tracks)


def test_generate_exactly_24_items():
    pool = make_pool(24)
    card = generate(pool)
    assert card.tracks == tuple(pool)
    assert card.cells[11].track == pool[11]
    assert card.cells[13].track == pool[12]
    assert card.cells[24].track == pool[23]
