from datetime import datetime

import httpx
import pytest

from delaywatch.carriers.fedex import FedexAdapter
from delaywatch.carriers.token_cache import TokenCache
from delaywatch.exceptions import CarrierAuthError, CarrierUnavailableError
from delaywatch.models import Carrier

API_URL = "https://fedex.test"
TRACKING_NUMBER = "123456789012"


def scan(date, event_type, description, city="Memphis"):
    return {
        "date": date,
        "eventType": event_type,
        "eventDescription": description,
        "scanLocation": {"address": {"city": city, "stateOrProvinceCode": "TN", "countryCode": "US"}},
    }


def tracking_payload(track_result):
    return {
        "transactionId": "abc-123",
        "output": {"completeTrackResults": [{
            "trackingNumber": TRACKING_NUMBER,
            "trackResults": [track_result],
        }]},
    }


IN_TRANSIT = {
    "latestStatusDetail": {"code": "IT", "statusByLocale": "In transit", "description": "In transit"},
    "estimatedDeliveryTimeWindow": {"window": {"ends": "2026-02-10T20:00:00+00:00"}},
    "scanEvents": [
        scan("2026-02-04T08:10:00+00:00", "DP", "Departed FedEx hub"),
        scan("2026-02-05T03:45:00+00:00", "AR", "Arrived at FedEx location", city="Indianapolis"),
    ],
}


class FedexApi:
    def __init__(self, track_responses):
        self.track_responses = list(track_responses)
        self.token_forms = []
        self.track_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            self.token_forms.append(request.content.decode())
            return httpx.Response(200, json={"access_token": "fx-token", "expires_in": 3600})

        self.track_requests.append(request)
        response = self.track_responses.pop(0)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)


def make_adapter(api, client_id="client", client_secret="secret"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return FedexAdapter(http, TokenCache(), API_URL, client_id, client_secret)


class TestFedexParsing:
    async def test_in_transit(self):
        api = FedexApi([tracking_payload(IN_TRANSIT)])

        result = await make_adapter(api).track(TRACKING_NUMBER)

        assert result.carrier == Carrier.FEDEX
        assert result.current_status == "In transit"
        assert result.is_delivered is False
        assert result.is_exception is False
        assert result.expected_delivery_date == datetime(2026, 2, 10, 20)
        assert result.last_scan_time == datetime(2026, 2, 5, 3, 45)
        assert result.last_scan_location == "Indianapolis, TN, US"
        assert len(result.events) == 2

    async def test_request_shape(self):
        api = FedexApi([tracking_payload(IN_TRANSIT)])

        await make_adapter(api).track(TRACKING_NUMBER)

        request = api.track_requests[0]
        assert request.method == "POST"
        assert request.url.path == "/track/v1/trackingnumbers"
        assert request.headers["Authorization"] == "Bearer fx-token"
        assert TRACKING_NUMBER in request.content.decode()
        assert "grant_type=client_credentials" in api.token_forms[0]
        assert "client_id=client" in api.token_forms[0]

    async def test_scan_times_converted_to_utc(self):
        track_result = dict(IN_TRANSIT, scanEvents=[scan("2026-02-05T14:30:00-05:00", "AR", "Arrived")])

        result = await make_adapter(FedexApi([tracking_payload(track_result)])).track(TRACKING_NUMBER)

        assert result.events[0].timestamp == datetime(2026, 2, 5, 19, 30)

    async def test_delivered(self):
        track_result = {
            "latestStatusDetail": {"code": "DL", "statusByLocale": "Delivered"},
            "dateAndTimes": [{"type": "ACTUAL_DELIVERY", "dateTime": "2026-02-06T15:12:00+00:00"}],
            "scanEvents": [scan("2026-02-06T15:12:00+00:00", "DL", "Delivered")],
        }

        result = await make_adapter(FedexApi([tracking_payload(track_result)])).track(TRACKING_NUMBER)

        assert result.is_delivered is True
        assert result.delivered_at == datetime(2026, 2, 6, 15, 12)
        assert result.is_exception is False

    async def test_delivered_at_falls_back_to_scan(self):
        track_result = {
            "latestStatusDetail": {"code": "DL", "statusByLocale": "Delivered"},
            "scanEvents": [scan("2026-02-06T15:12:00+00:00", "DL", "Delivered")],
        }

        result = await make_adapter(FedexApi([tracking_payload(track_result)])).track(TRACKING_NUMBER)

        assert result.delivered_at == datetime(2026, 2, 6, 15, 12)

    async def test_exception_from_status_text(self):
        track_result = {
            "latestStatusDetail": {
                "code": "DE",
                "statusByLocale": "Delivery exception",
                "ancillaryDetails": [{"reason": "08", "reasonDescription": "Recipient not available"}],
            },
        }

        result = await make_adapter(FedexApi([tracking_payload(track_result)])).track(TRACKING_NUMBER)

        assert result.is_exception is True
        assert result.is_delivered is False
        assert result.exception_code == "08"
        assert result.exception_reason == "Recipient not available"

    async def test_exception_from_delay_detail(self):
        track_result = {
            "latestStatusDetail": {"code": "IT", "statusByLocale": "In transit"},
            "delayDetail": {"type": "WEATHER", "status": "DELAYED"},
            "dateAndTimes": [
                {"type": "ESTIMATED_DELIVERY", "dateTime": "2026-02-09T00:00:00+00:00"},
                {"type": "APPOINTMENT_DELIVERY", "dateTime": "2026-02-11T00:00:00+00:00"},
            ],
        }

        result = await make_adapter(FedexApi([tracking_payload(track_result)])).track(TRACKING_NUMBER)

        assert result.is_exception is True
        assert result.exception_code == "WEATHER"
        assert result.exception_reason == "DELAYED"
        assert result.expected_delivery_date == datetime(2026, 2, 9)
        assert result.rescheduled_delivery_date == datetime(2026, 2, 11)

    async def test_on_time_delay_detail_is_not_an_exception(self):
        track_result = dict(IN_TRANSIT, delayDetail={"status": "ON_TIME"}, dateAndTimes=[
            {"type": "APPOINTMENT_DELIVERY", "dateTime": "2026-02-11T00:00:00+00:00"},
        ])

        result = await make_adapter(FedexApi([tracking_payload(track_result)])).track(TRACKING_NUMBER)

        assert result.is_exception is False
        assert result.rescheduled_delivery_date is None

    async def test_not_found_alert(self):
        payload = {"alerts": [{"code": "TRACKING.TRACKINGNUMBER.NOTFOUND", "message": "Not found", "alertType": "WARNING"}]}
        assert (await make_adapter(FedexApi([payload])).track(TRACKING_NUMBER)).is_empty

    async def test_track_result_error(self):
        payload = tracking_payload({"error": {"code": "TRACKING.TRACKINGNUMBER.INVALID", "message": "Invalid"}})
        assert (await make_adapter(FedexApi([payload])).track(TRACKING_NUMBER)).is_empty

    async def test_no_track_results(self):
        payload = {"output": {"completeTrackResults": []}}
        assert (await make_adapter(FedexApi([payload])).track(TRACKING_NUMBER)).is_empty


class TestFedexErrors:
    async def test_401_invalidates_cached_token(self):
        api = FedexApi([httpx.Response(401)])
        adapter = make_adapter(api)

        with pytest.raises(CarrierAuthError) as exc_info:
            await adapter.track(TRACKING_NUMBER)

        assert exc_info.value.retryable is True
        assert adapter.token_cache.get(Carrier.FEDEX) is None

    async def test_token_endpoint_down(self):
        def handler(request):
            return httpx.Response(502)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        adapter = FedexAdapter(http, TokenCache(), API_URL, "client", "secret")

        with pytest.raises(CarrierUnavailableError):
            await adapter.track(TRACKING_NUMBER)

    async def test_malformed_token_response(self):
        def handler(request):
            return httpx.Response(200, json={"token": "missing access_token"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        adapter = FedexAdapter(http, TokenCache(), API_URL, "client", "secret")

        with pytest.raises(CarrierAuthError):
            await adapter.track(TRACKING_NUMBER)

    async def test_missing_credentials(self):
        with pytest.raises(CarrierAuthError):
            await make_adapter(FedexApi([]), client_secret=None).track(TRACKING_NUMBER)
