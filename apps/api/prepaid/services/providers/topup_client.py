from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import requests

from prepaid.core.config import Settings
from prepaid.core.exceptions import UpstreamProviderError
from prepaid.core.logging import mask_phone

logger = logging.getLogger(__name__)

SUCCESS_STATES = ("Completed", "Processing")


@dataclass
class TransferResult:
    transfer_id: Optional[str]
    status: str  # Completed, Processing, Failed
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATES


class TopupProviderClient:
    """Blocking HTTP client for the top-up provider (DingConnect-style API).

    Call from async code through ``starlette.concurrency.run_in_threadpool``.
    """

    name = "dingconnect"

    def __init__(self, base_url: str, api_key: str | None, timeout: float = 30.0,
                 session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TopupProviderClient":
        return cls(
            base_url=settings.topup_provider_base_url,
            api_key=settings.topup_provider_api_key,
            timeout=settings.topup_provider_timeout_sec,
        )

    def _request(self, method: str, endpoint: str, payload: dict | None = None) -> Any:
        if not self.api_key:
            raise UpstreamProviderError("Top-up provider API key not configured", provider=self.name)
        url = f"{self.base_url}{endpoint}"
        try:
            resp = self.session.request(
                method,
                url,
                json=payload,
                headers={"Content-Type": "application/json", "api_key": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamProviderError(f"Top-up provider unreachable: {e}", provider=self.name) from e

        if resp.status_code >= 400:
            try:
                details = resp.json()
            except ValueError:
                details = {"message": resp.text or resp.reason}
            message = (
                details.get("ErrorMessage") or details.get("message") or str(details)
                if isinstance(details, dict) else str(details)
            )
            code = None
            if isinstance(details, dict) and details.get("ErrorCodes"):
                first = details["ErrorCodes"][0]
                code = first.get("Code") if isinstance(first, dict) else str(first)
            raise UpstreamProviderError(
                f"Top-up provider error {resp.status_code}: {message}",
                provider=self.name,
                provider_code=code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProviderError(
                f"Top-up provider returned a non-JSON response ({resp.status_code})",
                provider=self.name,
            ) from e
        # Responses come wrapped as {ResultCode, ErrorCodes, Items}
        if isinstance(data, dict) and "Items" in data:
            return data["Items"]
        return data

    def send_transfer(
        self,
        sku_code: str,
        account_number: str,
        send_value: Decimal | None = None,
        validate_only: bool = False,
        distributor_ref: str | None = None,
    ) -> TransferResult:
        payload: dict[str, Any] = {
            "SkuCode": sku_code,
            "AccountNumber": account_number,
            "ValidateOnly": bool(validate_only),
        }
        if send_value is not None:
            payload["SendValue"] = float(send_value)
        if distributor_ref:
            payload["DistributorRef"] = distributor_ref

        logger.info("SendTransfer sku=%s account=%s ref=%s validate_only=%s",
                    sku_code, mask_phone(account_number), distributor_ref, validate_only)
        data = self._request("POST", "/api/V1/SendTransfer", payload)
        if isinstance(data, list):
            data = data[0] if data else {}
        record = data.get("TransferRecord", data) if isinstance(data, dict) else {}
        transfer_id = record.get("TransferId")
        if isinstance(transfer_id, dict):
            transfer_id = transfer_id.get("TransferRef")
        status = record.get("Status") or record.get("ProcessingState") or "Failed"
        return TransferResult(
            transfer_id=str(transfer_id) if transfer_id is not None else None,
            status=str(status),
            error_message=record.get("ErrorMessage"),
            error_code=record.get("ErrorCode"),
        )
