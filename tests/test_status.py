import pytest

from nezha.status import Status, status_from_percent, status_label


def test_status_codes_match_their_numeric_values():
    codes = [status_from_percent(p).value for p in (0, 100, 90, 50)]
    assert codes == [1, 2, 3, 4]


@pytest.mark.parametrize(
    "percent, expected",
    [
        (0, Status.NO_DATA),
        (0.0, Status.NO_DATA),
        (100, Status.GOOD),
        (96, Status.GOOD),
        (95.5, Status.GOOD),
        (95, Status.LOW_AVAILABILITY),
        (81, Status.LOW_AVAILABILITY),
        (80, Status.DOWN),
        (1, Status.DOWN),
    ],
)
def test_status_from_percent(percent, expected):
    assert status_from_percent(percent) is expected


@pytest.mark.parametrize(
    "code, label",
    [
        (Status.NO_DATA, "No Data"),
        (Status.GOOD, "Good"),
        (Status.LOW_AVAILABILITY, "Low Availability"),
        (Status.DOWN, "Down"),
        (2, "Good"),
    ],
)
def test_status_label(code, label):
    assert status_label(code) == label


@pytest.mark.parametrize("code", [0, 5, 255])
def test_unknown_status_label_is_empty(code):
    assert status_label(code) == ""