"""
Pydantic models for the UPS Track v1 and FedEx Track v1 JSON payloads.

Only the fields the adapters read are declared; everything else is kept as
extra data. Every field is optional because both carriers omit keys freely.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CarrierPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


# UPS


class UpsAddress(CarrierPayload):
    city: Optional[str] = None
    state_province: Optional[str] = Field(None, alias="stateProvince")
    postal_code: Optional[str] = Field(None, alias="postalCode")
    country: Optional[str] = None
    country_code: Optional[str] = Field(None, alias="countryCode")
    scheduled_delivery_date: Optional[str] = Field(None, alias="scheduledDeliveryDate")


class UpsLocation(CarrierPayload):
    address: Optional[UpsAddress] = None


class UpsStatus(CarrierPayload):
    type: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    status_code: Optional[str] = Field(None, alias="statusCode")


class UpsActivity(CarrierPayload):
    date: Optional[str] = None
    time: Optional[str] = None
    location: Optional[UpsLocation] = None
    status: Optional[UpsStatus] = None


class UpsDeliveryDate(CarrierPayload):
    type: Optional[str] = None
    date: Optional[str] = None


class UpsPackageAddress(CarrierPayload):
    type: Optional[str] = None
    address: Optional[UpsAddress] = None


class UpsPackage(CarrierPayload):
    tracking_number: Optional[str] = Field(None, alias="trackingNumber")
    delivery_date: Optional[List[UpsDeliveryDate]] = Field(None, alias="deliveryDate")
    activity: Optional[List[UpsActivity]] = None
    current_status: Optional[UpsActivity] = Field(None, alias="currentStatus")
    package_address: Optional[List[UpsPackageAddress]] = Field(None, alias="packageAddress")


class UpsWarning(CarrierPayload):
    code: Optional[str] = None
    message: Optional[str] = None


class UpsShipment(CarrierPayload):
    inquiry_number: Optional[str] = Field(None, alias="inquiryNumber")
    package: Optional[List[UpsPackage]] = None
    warnings: Optional[List[UpsWarning]] = None


class UpsTrackResponse(CarrierPayload):
    shipment: Optional[List[UpsShipment]] = None


class UpsTrackingResponse(CarrierPayload):
    track_response: Optional[UpsTrackResponse] = Field(None, alias="trackResponse")


# FedEx


class FedexAddress(CarrierPayload):
    city: Optional[str] = None
    state_or_province_code: Optional[str] = Field(None, alias="stateOrProvinceCode")
    country_code: Optional[str] = Field(None, alias="countryCode")
    country_name: Optional[str] = Field(None, alias="countryName")
    postal_code: Optional[str] = Field(None, alias="postalCode")


class FedexLocation(CarrierPayload):
    address: Optional[FedexAddress] = None


class FedexScanEvent(CarrierPayload):
    date: Optional[str] = None
    derived_status: Optional[str] = Field(None, alias="derivedStatus")
    scan_location: Optional[FedexLocation] = Field(None, alias="scanLocation")
    event_description: Optional[str] = Field(None, alias="eventDescription")
    event_type: Optional[str] = Field(None, alias="eventType")
    exception_description: Optional[str] = Field(None, alias="exceptionDescription")
    exception_code: Optional[str] = Field(None, alias="exceptionCode")


class FedexDateTime(CarrierPayload):
    date_time: Optional[str] = Field(None, alias="dateTime")
    type: Optional[str] = None


class FedexWindow(CarrierPayload):
    begins: Optional[str] = None
    ends: Optional[str] = None


class FedexDeliveryWindow(CarrierPayload):
    type: Optional[str] = None
    window: Optional[FedexWindow] = None


class FedexAncillaryDetail(CarrierPayload):
    reason: Optional[str] = None
    reason_description: Optional[str] = Field(None, alias="reasonDescription")
    action: Optional[str] = None
    action_description: Optional[str] = Field(None, alias="actionDescription")


class FedexStatusDetail(CarrierPayload):
    code: Optional[str] = None
    derived_code: Optional[str] = Field(None, alias="derivedCode")
    status_by_locale: Optional[str] = Field(None, alias="statusByLocale")
    description: Optional[str] = None
    ancillary_details: Optional[List[FedexAncillaryDetail]] = Field(None, alias="ancillaryDetails")


class FedexDelayDetail(CarrierPayload):
    type: Optional[str] = None
    sub_type: Optional[str] = Field(None, alias="subType")
    status: Optional[str] = None


class FedexError(CarrierPayload):
    code: Optional[str] = None
    message: Optional[str] = None


class FedexTrackResult(CarrierPayload):
    latest_status_detail: Optional[FedexStatusDetail] = Field(None, alias="latestStatusDetail")
    date_and_times: Optional[List[FedexDateTime]] = Field(None, alias="dateAndTimes")
    scan_events: Optional[List[FedexScanEvent]] = Field(None, alias="scanEvents")
    estimated_delivery_time_window: Optional[FedexDeliveryWindow] = Field(None, alias="estimatedDeliveryTimeWindow")
    standard_transit_time_window: Optional[FedexDeliveryWindow] = Field(None, alias="standardTransitTimeWindow")
    delay_detail: Optional[FedexDelayDetail] = Field(None, alias="delayDetail")
    error: Optional[FedexError] = None


class FedexCompleteTrackResult(CarrierPayload):
    tracking_number: Optional[str] = Field(None, alias="trackingNumber")
    track_results: Optional[List[FedexTrackResult]] = Field(None, alias="trackResults")


class FedexOutput(CarrierPayload):
    complete_track_results: Optional[List[FedexCompleteTrackResult]] = Field(None, alias="completeTrackResults")


class FedexAlert(CarrierPayload):
    code: Optional[str] = None
    message: Optional[str] = None
    alert_type: Optional[str] = Field(None, alias="alertType")


class FedexTrackingResponse(CarrierPayload):
    transaction_id: Optional[str] = Field(None, alias="transactionId")
    output: Optional[FedexOutput] = None
    alerts: Optional[List[FedexAlert]] = None
