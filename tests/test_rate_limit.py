import pytest

from chatblast.core.rate_limit import MIN_SEND_DELAY_SEC, effective_delay


@pytest.mark.parametrize(
    "data, default, maximum, expected",
    [
        ({}, 3.0, None, 3.0),
        (None, 3.0, None, 3.0),
        ({"delay": 10}, 3.0, None, 10.0),
        ({"delay": 0}, 3.0, None, MIN_SEND_DELAY_SEC),
        ({}, 0.5, None, MIN_SEND_DELAY_SEC),
        ({"delay": 1000}, 3.0, 300.0, 300.0),
        ({"delay": True}, 3.0, None, 3.0),
        ({"delay": "fast"}, 3.0, None, 3.0),
        ({"delay": "7.5"}, 3.0, None, 7.5),
    ],
)
def test_effective_delay(data, default, maximum, expected):
    assert effective_delay(data, default=default, maximum=maximum) == expected


def test_floor_wins_over_tiny_maximum():
    assert effective_delay({"delay": 5}, default=3.0, maximum=1.0) == MIN_SEND_DELAY_SEC
