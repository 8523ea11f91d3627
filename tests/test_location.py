import time

import httpx

from fire_dispatch.location import (
    Landmark,
    LandmarkGeocoder,
    LocationResolver,
    RemoteGeocoder,
    parse_coordinates,
)
from fire_dispatch.models import Coordinates


def _remote(handler) -> RemoteGeocoder:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return RemoteGeocoder(api_key="test-key", url="https://geo.test/geocode/json", timeout=1.5, client=client)


def _ok(address: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "OK", "results": [{"formatted_address": address}]})

    return handler


def test_parse_coordinates() -> None:
    assert parse_coordinates("5.60,-0.18") == Coordinates(5.60, -0.18)
    assert parse_coordinates(" 5.6 , -0.18 ") == Coordinates(5.6, -0.18)
    assert parse_coordinates("Ring Road Central") is None
    assert parse_coordinates("") is None


def test_address_text_is_returned_as_is() -> None:
    calls = []
    resolver = LocationResolver(remote=_remote(lambda r: calls.append(r) or httpx.Response(500)))

    assert resolver.resolve("Makola Market") == "Makola Market"
    assert resolver.resolve("Osu, Accra") == "Osu, Accra"
    assert calls == []


def test_out_of_range_pair_is_returned_unmodified() -> None:
    calls = []
    resolver = LocationResolver(remote=_remote(lambda r: calls.append(r) or httpx.Response(500)))

    assert resolver.resolve("95.0,-0.18") == "95.0,-0.18"
    assert resolver.resolve("5.6,-181") == "5.6,-181"
    assert calls == []


def test_remote_geocoder_result_is_used_and_cached() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["latlng"])
        return _ok("Kwame Nkrumah Ave, Accra, Ghana")(request)

    resolver = LocationResolver(remote=_remote(handler))

    assert resolver.resolve("5.60,-0.18") == "Kwame Nkrumah Ave, Accra, Ghana"
    assert resolver.resolve("5.60,-0.18") == "Kwame Nkrumah Ave, Accra, Ghana"
    assert calls == ["5.6,-0.18"]


def test_cache_evicts_least_recently_used() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["latlng"])
        return _ok("Somewhere in Accra")(request)

    resolver = LocationResolver(remote=_remote(handler), cache_size=2)

    resolver.resolve("5.60,-0.18")
    resolver.resolve("5.61,-0.18")
    resolver.resolve("5.60,-0.18")
    resolver.resolve("5.62,-0.18")
    resolver.resolve("5.60,-0.18")
    resolver.resolve("5.61,-0.18")

    assert calls == ["5.6,-0.18", "5.61,-0.18", "5.62,-0.18", "5.61,-0.18"]


def test_remote_failure_falls_back_to_local() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("no route", request=request)

    local = LandmarkGeocoder([Landmark("Makola Market", Coordinates(5.6005, -0.18))], radius_km=5)
    resolver = LocationResolver(remote=_remote(handler), local=local)

    assert resolver.resolve("5.60,-0.18") == "Makola Market"


def test_non_ok_status_falls_back_to_local() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})

    local = LandmarkGeocoder([Landmark("Makola Market", Coordinates(5.62, -0.18))], radius_km=5)
    resolver = LocationResolver(remote=_remote(handler), local=local)

    assert resolver.resolve("5.60,-0.18") == "2.2 km from Makola Market"


def test_total_failure_rounds_coordinates() -> None:
    def broken_local(point: Coordinates):
        raise OSError("no geocoder on this host")

    resolver = LocationResolver(remote=_remote(lambda r: httpx.Response(503)), local=broken_local)

    assert resolver.resolve("5.603716,-0.186964") == "5.6037, -0.1870"


def test_slow_local_geocoder_is_abandoned() -> None:
    def slow_local(point: Coordinates):
        time.sleep(0.5)
        return "too late"

    resolver = LocationResolver(local=slow_local, local_timeout=0.05)

    assert resolver.resolve("5.60,-0.18") == "5.6000, -0.1800"


def test_missing_location() -> None:
    assert LocationResolver().resolve("") == "Location not available"
    assert LocationResolver().resolve(None) == "Location not available"


def test_landmark_outside_radius_is_ignored() -> None:
    geocoder = LandmarkGeocoder([Landmark("Kumasi", Coordinates(6.6885, -1.6244))], radius_km=5)

    assert geocoder(Coordinates(5.60, -0.18)) is None
