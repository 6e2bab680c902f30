from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest


@pytest.fixture()
def new_york():
    try:
        return ZoneInfo("America/New_York")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not available")
