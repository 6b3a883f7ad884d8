from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, List, Optional, Union

import httpx

from marketplace.config import Settings
from marketplace.utils.logger import get_logger, mask

logger = get_logger("sms")

_HEADERS = {
    "User-Agent": "MarketplaceAPI/1.0",
    "Accept": "text/xml,application/xml,*/*;q=0.1",
}


@dataclass
class SmsResult:
    success: bool
    data: Any = None
    status: Optional[int] = None
    error: Optional[str] = None
    delivered: Optional[bool] = None


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[-1]


def xml_to_dict(element: ET.Element) -> Any:
    """Convert an XML element to plain dicts/strings (repeated tags become lists)."""
    children = list(element)
    if not children:
        return (element.text or "").strip()
    out: dict = {}
    for child in children:
        key = _strip_ns(child.tag)
        value = xml_to_dict(child)
        if key in out:
            if not isinstance(out[key], list):
                out[key] = [out[key]]
            out[key].append(value)
        else:
            out[key] = value
    return out


def parse_gateway_body(raw: str) -> Any:
    """Parse an XML gateway response into ``{root_tag: {...}}``; other bodies are returned as-is."""
    if isinstance(raw, str) and raw.strip().startswith("<"):
        try:
            root = ET.fromstring(raw.strip())
        except ET.ParseError:
            return raw
        return {_strip_ns(root.tag): xml_to_dict(root)}
    return raw


class SmsService:
    """SMS delivery through the SMSBox HTTP gateway.

    With ``SMS_PROVIDER=dummy`` nothing leaves the process: the message is logged
    and the send is reported as successful (dev mode).
    Failures never raise; they come back as ``SmsResult(success=False, ...)``.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client
        if self.provider == "smsbox" and not (
            settings.SMS_USERNAME and settings.SMS_PASSWORD and settings.SMS_CUSTOMER_ID
        ):
            logger.warning("SMS environment variables are not fully set.")

    @property
    def provider(self) -> str:
        return (self.settings.SMS_PROVIDER or "dummy").lower()

    @staticmethod
    def _sanitize_base_url(raw: str) -> str:
        base = re.sub(r"\?+$", "", raw or "")
        # the gateway only answers on plain http
        if base.startswith("https://smsbox.com"):
            base = "http://" + base[len("https://"):]
        return base

    def _credentials(self) -> dict:
        return {
            "username": self.settings.SMS_USERNAME or "",
            "password": self.settings.SMS_PASSWORD or "",
            "customerId": self.settings.SMS_CUSTOMER_ID or "",
        }

    async def _get(self, url: str, params: dict) -> httpx.Response:
        safe = {k: (mask(v) if k == "password" else v) for k, v in params.items()}
        logger.debug(f"SMS request {url} params={safe}")
        if self._client is not None:
            return await self._client.get(url, params=params, headers=_HEADERS)
        async with httpx.AsyncClient(timeout=self.settings.SMS_TIMEOUT_SECONDS) as client:
            return await client.get(url, params=params, headers=_HEADERS)

    async def send_sms(self, numbers: Union[str, List[str]], message: str) -> SmsResult:
        recipient = ",".join(numbers) if isinstance(numbers, list) else numbers

        if self.provider == "dummy":
            logger.info(f"[SMS] {recipient} => {message}")
            return SmsResult(success=True, data={"provider": "dummy"})

        params = {
            **self._credentials(),
            "senderText": self.settings.SMS_SENDER or "",
            "defDate": "",
            "isBlink": "false",
            "isFlash": "false",
            "recipientNumbers": recipient,
            "messageBody": message,
        }
        url = self._sanitize_base_url(self.settings.SMS_BASE_URL)
        try:
            resp = await self._get(url, params)
        except httpx.HTTPError as e:
            logger.error(f"SMS send error: {e}")
            return SmsResult(success=False, error=str(e) or "Unknown")

        if resp.status_code >= 400:
            logger.warning(
                f"SMS gateway returned {resp.status_code}: {resp.text[:2000]}"
            )
            return SmsResult(success=False, status=resp.status_code, data=resp.text)

        return SmsResult(success=True, status=resp.status_code, data=parse_gateway_body(resp.text))

    async def get_sms_status(self, message_id: str) -> SmsResult:
        if self.provider == "dummy":
            return SmsResult(success=True, data={"provider": "dummy"}, delivered=True)

        params = {**self._credentials(), "messageId": message_id, "detailed": "true"}
        url = self._sanitize_base_url(self.settings.SMS_STATUS_URL)
        try:
            resp = await self._get(url, params)
        except httpx.HTTPError as e:
            logger.error(f"SMS status error: {e}")
            return SmsResult(success=False, error=str(e) or "Unknown")

        if resp.status_code >= 400:
            return SmsResult(success=False, status=resp.status_code, data=resp.text)

        parsed = parse_gateway_body(resp.text)
        return SmsResult(
            success=True,
            status=resp.status_code,
            data=parsed,
            delivered=_delivered_flag(parsed),
        )


def _delivered_flag(parsed: Any) -> Optional[bool]:
    if not isinstance(parsed, dict):
        return None
    candidates = [parsed.get("Counters")]
    for root_key in ("SmsStatusResponse", "smsstatusresponse"):
        root = parsed.get(root_key)
        if isinstance(root, dict):
            candidates.append(root.get("Counters") or root.get("counters"))
    for counters in candidates:
        if isinstance(counters, dict) and "SentCount" in counters:
            return str(counters["SentCount"]) == "1"
    return None
