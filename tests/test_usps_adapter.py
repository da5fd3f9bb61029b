from datetime import datetime
from xml.etree import ElementTree as ET

import httpx
import pytest

from delaywatch.carriers.usps import UspsAdapter
from delaywatch.exceptions import CarrierAuthError, CarrierUnavailableError
from delaywatch.models import Carrier

API_URL = "https://usps.test"
TRACKING_NUMBER = "9400111899223100000000"


IN_TRANSIT_XML = f"""<?xml version="1.0"?>
<TrackResponse>
  <TrackInfo ID="{TRACKING_NUMBER}">
    <Status>In Transit to Next Facility</Status>
    <StatusCategory>In Transit</StatusCategory>
    <ExpectedDeliveryDate>February 9, 2026</ExpectedDeliveryDate>
    <TrackSummary>
      <EventTime>2:15 pm</EventTime>
      <EventDate>February 5, 2026</EventDate>
      <Event>Arrived at USPS Regional Facility</Event>
      <EventCity>ATLANTA GA DISTRIBUTION CENTER</EventCity>
      <EventState>GA</EventState>
      <EventCode>10</EventCode>
    </TrackSummary>
    <TrackDetail>
      <EventTime>9:02 am</EventTime>
      <EventDate>February 4, 2026</EventDate>
      <Event>Accepted at USPS Origin Facility</Event>
      <EventCity>CHARLOTTE</EventCity>
      <EventState>NC</EventState>
      <EventCode>OA</EventCode>
    </TrackDetail>
  </TrackInfo>
</TrackResponse>"""

ARRIVING_LATE_XML = f"""<TrackResponse>
  <TrackInfo ID="{TRACKING_NUMBER}">
    <Status>In Transit, Arriving Late</Status>
    <StatusCategory>Alert</StatusCategory>
    <TrackSummary>
      <EventTime>6:00 am</EventTime>
      <EventDate>February 10, 2026</EventDate>
      <Event>In Transit, Arriving Late</Event>
    </TrackSummary>
  </TrackInfo>
</TrackResponse>"""

DELIVERED_XML = f"""<TrackResponse>
  <TrackInfo ID="{TRACKING_NUMBER}">
    <StatusSummary>Your item was delivered at 11:20 am on February 7, 2026.</StatusSummary>
    <StatusCategory>Delivered</StatusCategory>
    <TrackSummary>
      <EventTime>11:20 am</EventTime>
      <EventDate>February 7, 2026</EventDate>
      <Event>Delivered, In/At Mailbox</Event>
      <EventCity>AUSTIN</EventCity>
      <EventState>TX</EventState>
    </TrackSummary>
  </TrackInfo>
</TrackResponse>"""

NOT_FOUND_XML = f"""<TrackResponse>
  <TrackInfo ID="{TRACKING_NUMBER}">
    <Error>
      <Number>-2147219302</Number>
      <Description>The Postal Service could not locate the tracking information for your request.</Description>
    </Error>
  </TrackInfo>
</TrackResponse>"""

AUTH_FAILURE_XML = """<Error>
  <Number>80040B1A</Number>
  <Description>Authorization failure.  Perhaps username and/or password is incorrect.</Description>
</Error>"""


class UspsApi:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, httpx.Response):
            return self.response
        return httpx.Response(200, text=self.response)


def make_adapter(api, user_id="USER123"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return UspsAdapter(http, API_URL, user_id)


async def test_in_transit():
    api = UspsApi(IN_TRANSIT_XML)

    result = await make_adapter(api).track(TRACKING_NUMBER)

    assert result.carrier == Carrier.USPS
    assert result.current_status == "In Transit to Next Facility"
    assert result.is_delivered is False
    assert result.is_exception is False
    assert result.expected_delivery_date == datetime(2026, 2, 9)
    assert [event.timestamp for event in result.events] == [
        datetime(2026, 2, 5, 14, 15),
        datetime(2026, 2, 4, 9, 2),
    ]
    assert result.last_scan_location == "ATLANTA GA DISTRIBUTION CENTER, GA"


async def test_request_carries_user_id_and_tracking_number():
    api = UspsApi(IN_TRANSIT_XML)

    await make_adapter(api).track(TRACKING_NUMBER)

    request = api.requests[0]
    assert request.url.path == "/ShippingAPI.dll"
    assert request.url.params["API"] == "TrackV2"
    xml = ET.fromstring(request.url.params["XML"])
    assert xml.tag == "TrackFieldRequest"
    assert xml.get("USERID") == "USER123"
    assert xml.find("TrackID").get("ID") == TRACKING_NUMBER


async def test_arriving_late_is_an_exception():
    result = await make_adapter(UspsApi(ARRIVING_LATE_XML)).track(TRACKING_NUMBER)

    assert result.is_exception is True
    assert result.exception_code == "Alert"
    assert result.exception_reason == "In Transit, Arriving Late"
    assert result.is_delivered is False


async def test_delivered():
    result = await make_adapter(UspsApi(DELIVERED_XML)).track(TRACKING_NUMBER)

    assert result.is_delivered is True
    assert result.delivered_at == datetime(2026, 2, 7, 11, 20)


async def test_status_match_is_case_sensitive():
    xml = IN_TRANSIT_XML.replace("In Transit to Next Facility", "arriving late, delivered soon")

    result = await make_adapter(UspsApi(xml)).track(TRACKING_NUMBER)

    assert result.is_exception is False
    assert result.is_delivered is False


async def test_not_found_gives_empty_result():
    assert (await make_adapter(UspsApi(NOT_FOUND_XML)).track(TRACKING_NUMBER)).is_empty


async def test_malformed_xml_gives_empty_result():
    assert (await make_adapter(UspsApi("<TrackResponse><TrackInfo>")).track(TRACKING_NUMBER)).is_empty


async def test_empty_body_gives_empty_result():
    assert (await make_adapter(UspsApi("   ")).track(TRACKING_NUMBER)).is_empty


async def test_authorization_failure_raises():
    with pytest.raises(CarrierAuthError) as exc_info:
        await make_adapter(UspsApi(AUTH_FAILURE_XML)).track(TRACKING_NUMBER)
    assert exc_info.value.retryable is False


async def test_missing_user_id():
    api = UspsApi(IN_TRANSIT_XML)

    with pytest.raises(CarrierAuthError):
        await make_adapter(api, user_id=None).track(TRACKING_NUMBER)
    assert api.requests == []


async def test_server_error():
    with pytest.raises(CarrierUnavailableError):
        await make_adapter(UspsApi(httpx.Response(500, text="down"))).track(TRACKING_NUMBER)
