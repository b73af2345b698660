import pytest

from ranksync.core.errors import YearLockedError
from ranksync.domain.lists.year_lock import (
    is_year_locked,
    set_year_locked,
    validate_main_list_not_locked,
    validate_year_not_locked,
)


@pytest.mark.unit
def test_unknown_or_empty_year_is_unlocked(db_session):
    assert is_year_locked(2020) is False
    assert is_year_locked(None) is False
    assert is_year_locked(0) is False


@pytest.mark.unit
def test_lock_and_unlock_round(db_session):
    row = set_year_locked(2020, True)
    assert row.locked is True
    assert row.locked_at is not None
    assert is_year_locked(2020) is True

    row = set_year_locked(2020, False)
    assert row.to_dict() == {"year": 2020, "locked": False, "locked_at": None}
    assert is_year_locked(2020) is False


@pytest.mark.unit
def test_validators_only_fire_for_locked_main_lists(db_session):
    set_year_locked(2021, True)

    validate_main_list_not_locked(2021, False, "modify list items")
    validate_main_list_not_locked(None, True, "modify list items")
    validate_main_list_not_locked(2022, True, "modify list items")

    with pytest.raises(YearLockedError) as info:
        validate_main_list_not_locked(2021, True, "modify list items")
    assert "2021" in str(info.value)
    assert info.value.status == 403
    assert info.value.details == {"year": 2021, "year_locked": True}

    with pytest.raises(YearLockedError):
        validate_year_not_locked(2021, "change main status")
    validate_year_not_locked(None, "change main status")
