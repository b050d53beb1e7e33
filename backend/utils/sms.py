import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class SmsDeliveryError(Exception):
    """Raised by a gateway call that did not accept the message."""


class SmsDeliveryAdapter(ABC):
    """Sends an OTP to a phone. Returns True when the gateway accepted it.

    Implementations never raise; delivery problems are logged and reported
    through the return value.
    """

    @abstractmethod
    async def send_otp(self, phone: str, otp_code: str) -> bool:
        ...


class ConsoleSmsAdapter(SmsDeliveryAdapter):
    """Development/test delivery: writes the code to the log."""

    async def send_otp(self, phone: str, otp_code: str) -> bool:
        logger.info(f"OTP for {phone}: {otp_code} (not sent via SMS)")
        return True


class Msg91SmsAdapter(SmsDeliveryAdapter):
    """MSG91 delivery: OTP API first, flow API as fallback, log as last resort."""

    def __init__(
        self,
        auth_key: Optional[str],
        sender_id: str,
        template_id: Optional[str] = None,
        otp_url: str = default_settings.MSG91_OTP_URL,
        flow_url: str = default_settings.MSG91_FLOW_URL,
        timeout: float = 10,
        country_code: str = "91",
        expiry_minutes: int = 10,
    ):
        if not auth_key:
            logger.error("MSG91 auth key not configured; SMS delivery will fail")
        self.auth_key = auth_key
        self.sender_id = sender_id
        self.template_id = template_id
        self.otp_url = otp_url
        self.flow_url = flow_url
        self.timeout = timeout
        self.country_code = country_code
        self.expiry_minutes = expiry_minutes

    def format_phone(self, phone: str) -> str:
        """MSG91 wants the country code without '+'."""
        if phone.startswith("+"):
            return phone[1:]
        if len(phone) > 10 and phone.startswith(self.country_code):
            return phone
        return f"{self.country_code}{phone}"

    def format_message(self, otp_code: str) -> str:
        return (
            f"Your Bhishak Med OTP is: {otp_code}. "
            f"Valid for {self.expiry_minutes} minutes. Do not share this code."
        )

    async def _post(self, url: str, payload: dict) -> dict:
        headers = {"authkey": self.auth_key or "", "Content-Type": "application/json"}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=headers) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {"raw": await resp.text()}
                # MSG91 reports some failures as 200 with type=error
                if resp.status >= 400 or (isinstance(data, dict) and data.get("type") == "error"):
                    raise SmsDeliveryError(f"MSG91 {resp.status}: {data}")
                return data if isinstance(data, dict) else {"data": data}

    async def send_otp(self, phone: str, otp_code: str) -> bool:
        mobile = self.format_phone(phone)

        otp_payload = {"mobile": mobile, "otp": otp_code, "sender": self.sender_id}
        if self.template_id:
            otp_payload["template_id"] = self.template_id
        try:
            data = await self._post(self.otp_url, otp_payload)
            logger.info(f"MSG91 OTP sent to {phone}: {data}")
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError, SmsDeliveryError) as e:
            logger.error(f"MSG91 OTP API failed for {phone}: {e}")

        flow_payload = {
            "sender": self.sender_id,
            "mobiles": mobile,
            "message": self.format_message(otp_code),
        }
        try:
            await self._post(self.flow_url, flow_payload)
            logger.info(f"MSG91 SMS sent to {phone} via fallback endpoint")
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError, SmsDeliveryError) as e:
            logger.error(f"MSG91 fallback failed for {phone}: {e}")

        # Both gateways down: keep the code retrievable by operators
        logger.critical(f"SMS delivery failed for {phone}; OTP {otp_code} logged for manual delivery")
        return False


def build_sms_adapter(config: Settings = default_settings) -> SmsDeliveryAdapter:
    """Pick the delivery adapter for the running environment."""
    if config.is_production:
        return Msg91SmsAdapter(
            auth_key=config.MSG91_AUTH_KEY,
            sender_id=config.MSG91_SENDER_ID,
            template_id=config.MSG91_TEMPLATE_ID,
            otp_url=config.MSG91_OTP_URL,
            flow_url=config.MSG91_FLOW_URL,
            timeout=config.MSG91_TIMEOUT,
            country_code=config.SMS_COUNTRY_CODE,
            expiry_minutes=config.OTP_EXPIRY_MINUTES,
        )
    logger.info(f"ENVIRONMENT={config.ENVIRONMENT}; OTPs will be logged instead of sent")
    return ConsoleSmsAdapter()
