import pytest
from hypothesis import given, strategies as st

from ranksync.core.identity import (
    ContextState,
    find_by_identity,
    find_duplicates,
    identity_of,
    normalize_component,
    resolve_context,
)


@pytest.mark.unit
def test_identity_joins_normalized_components():
    entry = {"artist": "  Radiohead ", "title": "OK  Computer", "release_date": "1997-05-21"}
    assert identity_of(entry) == "radiohead::ok computer::1997-05-21"


@pytest.mark.unit
def test_identity_tolerates_missing_release_date():
    assert identity_of({"artist": "Björk", "title": "Homogenic"}) == "björk::homogenic::"


@pytest.mark.unit
def test_identity_accepts_camel_case_and_album_alias():
    a = {"artist": "Low", "album": "Hey What", "releaseDate": "2021"}
    b = {"artist": "low", "title": "hey what", "release_date": "2021"}
    assert identity_of(a) == identity_of(b)


@pytest.mark.unit
def test_identity_unifies_punctuation_variants():
    curly = {"artist": "Sufjan Stevens", "title": "Carrie & Lowell — Live…"}
    plain = {"artist": "Sufjan Stevens", "title": "carrie & lowell - live..."}
    assert identity_of(curly) == identity_of(plain)
    assert normalize_component("Don’t") == "don't"


@pytest.mark.unit
@pytest.mark.parametrize("entry", [None, "text", 42, {}, {"artist": "", "title": "  "}])
def test_identity_of_malformed_entry_is_empty(entry):
    assert identity_of(entry) == ""


_text = st.text(alphabet="abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789", min_size=1, max_size=12)


@pytest.mark.unit
@given(artist=_text, title=_text, release=st.one_of(st.none(), _text))
def test_identity_ignores_case_and_surrounding_whitespace(artist, title, release):
    base = {"artist": artist, "title": title, "release_date": release}
    noisy = {
        "artist": f"  {artist.upper()} ",
        "title": f"\t{title.lower()}  ",
        "release_date": f" {release} " if release else release,
    }
    assert identity_of(base) == identity_of(noisy)


@pytest.mark.unit
def test_find_by_identity_returns_first_match():
    items = [
        {"artist": "A", "title": "One"},
        {"artist": "B", "title": "Two"},
        {"artist": "a", "title": "ONE"},
    ]
    entry, index = find_by_identity(items, "a::one::")
    assert index == 0
    assert entry is items[0]
    assert find_by_identity(items, "c::three::") is None
    assert find_by_identity(items, "") is None


@pytest.mark.unit
def test_find_duplicates_lists_each_repeated_identity_once():
    items = [
        {"artist": "A", "title": "One"},
        {"artist": "a", "title": "one"},
        {"artist": "A", "title": "ONE"},
        {"artist": "B", "title": "Two"},
    ]
    assert find_duplicates(items) == ["a::one::"]


@pytest.mark.unit
def test_context_resolves_entry_that_moved_from_its_captured_index():
    x = {"artist": "X", "title": "Moved"}
    items = [{"artist": "P", "title": "p"}, {"artist": "Q", "title": "q"}, x]
    context = ContextState.capture("L", items, 2)

    # Another client moved X to the top.
    items = [x, items[0], items[1]]
    entry, index = resolve_context(items, context)
    assert index == 0
    assert identity_of(entry) == "x::moved::"


@pytest.mark.unit
def test_context_uses_index_hint_when_still_valid():
    items = [{"artist": "A", "title": "a"}, {"artist": "A", "title": "a"}]
    context = ContextState(list_id="L", index=1, identity="a::a::")
    _, index = resolve_context(items, context)
    assert index == 1


@pytest.mark.unit
def test_context_returns_none_when_entry_is_gone():
    context = ContextState(list_id="L", index=0, identity="gone::gone::")
    assert resolve_context([{"artist": "A", "title": "a"}], context) is None
