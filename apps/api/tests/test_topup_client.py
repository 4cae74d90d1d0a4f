from decimal import Decimal

import pytest
import requests

from prepaid.core.exceptions import UpstreamProviderError
from prepaid.core.logging import mask_phone
from prepaid.services.providers.topup_client import TopupProviderClient


class StubResponse:
    def __init__(self, status_code, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text
        self.reason = "Error"

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class StubSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.requests = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers})
        if self.exc:
            raise self.exc
        return self.response


def _client(session, api_key="key-123"):
    return TopupProviderClient("https://provider.test/", api_key, session=session)


def test_send_transfer_posts_payload_and_parses_record():
    session = StubSession(StubResponse(200, {
        "ResultCode": 1,
        "ErrorCodes": [],
        "TransferRecord": {"TransferId": {"TransferRef": "987"}, "ProcessingState": "Completed"},
    }))
    result = _client(session).send_transfer("MX_TELCEL_10", "+5215512345678", Decimal("12.5"),
                                            distributor_ref="ORD-1-ABCDEFGHI-R1")

    assert result.transfer_id == "987"
    assert result.succeeded is True
    sent = session.requests[0]
    assert sent["url"] == "https://provider.test/api/V1/SendTransfer"
    assert sent["headers"]["api_key"] == "key-123"
    assert sent["json"] == {
        "SkuCode": "MX_TELCEL_10",
        "AccountNumber": "+5215512345678",
        "ValidateOnly": False,
        "SendValue": 12.5,
        "DistributorRef": "ORD-1-ABCDEFGHI-R1",
    }


def test_failed_record_is_not_a_success():
    session = StubSession(StubResponse(200, {"TransferRecord": {"TransferId": 5, "Status": "Failed",
                                                                "ErrorMessage": "Bad number"}}))
    result = _client(session).send_transfer("SKU", "+1555000111")
    assert result.succeeded is False
    assert result.error_message == "Bad number"


def test_http_errors_raise_upstream_error_with_code():
    session = StubSession(StubResponse(400, {"ErrorMessage": "Invalid SKU",
                                             "ErrorCodes": [{"Code": "InvalidSku"}]}))
    with pytest.raises(UpstreamProviderError) as exc:
        _client(session).send_transfer("SKU", "+1555000111")
    assert exc.value.provider_code == "InvalidSku"
    assert exc.value.status_code == 502
    assert "Invalid SKU" in str(exc.value)


def test_network_errors_raise_upstream_error():
    session = StubSession(exc=requests.ConnectionError("connection refused"))
    with pytest.raises(UpstreamProviderError):
        _client(session).send_transfer("SKU", "+1555000111")


def test_missing_api_key_is_reported():
    session = StubSession(StubResponse(200, {}))
    with pytest.raises(UpstreamProviderError):
        _client(session, api_key=None).send_transfer("SKU", "+1555000111")
    assert session.requests == []


def test_phone_masking():
    assert mask_phone("+5215512345678") == "***5678"
    assert mask_phone("123") == "***"
    assert mask_phone(None) == "-"


def test_non_json_success_body_raises_upstream_error():
    session = StubSession(StubResponse(200, None, text="<html>Gateway maintenance</html>"))
    with pytest.raises(UpstreamProviderError) as exc:
        _client(session).send_transfer("SKU", "+1555000111")
    assert "non-JSON" in str(exc.value)
