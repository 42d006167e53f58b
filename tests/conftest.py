import pytest

import tfl_next_bus


def arrival_json(**overrides):
    data = {
        "$type": "Tfl.Api.Presentation.Entities.Prediction, Tfl.Api.Presentation.Entities",
        "id": "-1234567",
        "operationType": 1,
        "vehicleId": "LX11AVP",
        "naptanId": "490008660N",
        "stationName": "Oxford Circus Station",
        "lineId": "25",
        "lineName": "25",
        "platformName": "N",
        "direction": "outbound",
        "bearing": "80",
        "tripId": "1234",
        "baseVersion": "1",
        "destinationNaptanId": "",
        "destinationName": "Ilford",
        "timestamp": "2026-10-19T08:00:00.0000000Z",
        "timeToStation": 120,
        "currentLocation": "",
        "towards": "Holborn",
        "expectedArrival": "2026-10-19T08:02:00Z",
        "timeToLive": "2026-10-19T08:02:30Z",
        "modeName": "bus",
        "timing": {
            "$type": "Tfl.Api.Presentation.Entities.PredictionTiming, Tfl.Api.Presentation.Entities",
            "countdownServerAdjustment": "00:00:00",
            "source": "2026-10-18T15:00:00.000Z",
            "insert": "2026-10-19T07:59:50.000Z",
            "read": "2026-10-19T07:59:51.000Z",
            "sent": "2026-10-19T08:00:00Z",
            "received": "0001-01-01T00:00:00Z",
        },
    }
    data.update(overrides)
    return data


def make_arrival(**overrides):
    return tfl_next_bus.Arrival.model_validate(arrival_json(**overrides))


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeClient:
    """Stands in for TflClient; returns (or raises) queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def fetch_arrivals(self):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return list(result)


@pytest.fixture
def config():
    return tfl_next_bus.Config(
        stop_id="490008660N",
        cors_allowed_origins=("http://allowed.test",),
    )


@pytest.fixture
def clock():
    return FakeClock()
