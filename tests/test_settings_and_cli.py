import json
from unittest.mock import MagicMock, patch

import pytest

import places_search as ps
from places_search import (
    CATEGORIES,
    Coordinate,
    InvalidParameter,
    PlaceRecord,
    RemoteQueryFailed,
    Settings,
    category_by_key,
    get_categories,
    haversine_m,
    make_session,
)


def test_categories_are_static_and_ordered():
    cats = get_categories()
    assert len(cats) == 8
    assert cats[0].key == "restaurant"
    assert [c.key for c in cats] == [
        "restaurant", "cafe", "hotel", "tourist_attraction", "hospital", "pharmacy", "bank", "fuel",
    ]
    assert get_categories() == cats
    assert ps.PlacesClient(session=MagicMock()).get_categories() is CATEGORIES


def test_category_by_key():
    assert category_by_key("fuel").color == "yellow"
    assert category_by_key("spaceport") is None


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("PLACES_OVERPASS_URL", "https://example.test/interpreter")
    monkeypatch.setenv("PLACES_TIMEOUT_S", "12.5")
    monkeypatch.setenv("PLACES_DEFAULT_RADIUS_M", "300")
    monkeypatch.setenv("PLACES_RETRIES", "2")
    s = Settings()
    assert s.overpass_url == "https://example.test/interpreter"
    assert s.timeout_s == 12.5
    assert s.default_radius_m == 300
    assert s.retries == 2


def test_settings_defaults_and_overrides(monkeypatch):
    for name in ("PLACES_OVERPASS_URL", "PLACES_TIMEOUT_S", "PLACES_DEFAULT_RADIUS_M", "PLACES_RETRIES"):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.overpass_url == ps.OVERPASS_URL
    assert s.timeout_s == 25
    assert s.default_radius_m == 2000
    assert s.retries == 0
    assert Settings(timeout_s=5).timeout_s == 5


@pytest.mark.parametrize("name,value", [("PLACES_TIMEOUT_S", "soon"), ("PLACES_TIMEOUT_S", "0"),
                                        ("PLACES_RETRIES", "-1"), ("PLACES_DEFAULT_RADIUS_M", "-5")])
def test_settings_reject_bad_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(InvalidParameter):
        Settings()


def test_make_session_sets_headers_and_retry():
    s = make_session(Settings(retries=3, user_agent="ua-test"))
    assert s.headers["User-Agent"] == "ua-test"
    assert s.headers["Accept"] == "application/json"
    assert s.get_adapter("https://overpass-api.de").max_retries.total == 3


def test_haversine_one_degree_of_latitude():
    d = haversine_m(Coordinate(0.0, 0.0), Coordinate(1.0, 0.0))
    assert 111_000 < d < 111_400


def _places():
    return [PlaceRecord(1, Coordinate(55.751, 37.61), "Cafe X", "coffee", "cafe", "Main St")]


def test_cli_lists_categories(capsys):
    assert ps.main(["--list-categories"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].startswith("restaurant\t")
    assert len(out) == 8


@patch("places_search.PlacesClient.search_nearby")
def test_cli_prints_json(mock_search, capsys):
    mock_search.return_value = _places()
    assert ps.main(["--lat", "55.75", "--lon", "37.61", "--category", "cafe", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data[0]["title"] == "Cafe X"
    assert data[0]["url"].startswith("https://www.openstreetmap.org/?mlat=55.751000")
    args = mock_search.call_args.args
    assert args[0] == Coordinate(55.75, 37.61)
    assert args[2] == "cafe"


@patch("places_search.PlacesClient.search_nearby")
def test_cli_prints_table(mock_search, capsys):
    mock_search.return_value = _places()
    assert ps.main(["--lat", "55.75", "--lon", "37.61"]) == 0
    out = capsys.readouterr().out
    assert "Cafe X" in out and "Main St" in out and "111 m" in out


@patch("places_search.PlacesClient.search_nearby")
def test_cli_exit_codes(mock_search, capsys):
    mock_search.side_effect = RemoteQueryFailed("HTTP 504", status_code=504)
    assert ps.main(["--lat", "1", "--lon", "2"]) == 1
    mock_search.side_effect = InvalidParameter("radius")
    assert ps.main(["--lat", "1", "--lon", "2", "--radius", "0"]) == 2
    assert "Invalid parameter" in capsys.readouterr().err


def test_cli_requires_coordinates():
    with pytest.raises(SystemExit):
        ps.main(["--category", "cafe"])
