"""Typed, logged wrapper around the Paystack REST API.

Only three capabilities are used: initialize a transaction, verify a transaction,
and authenticate webhook payloads. Failures surface as GatewayUnavailable (network,
timeout, 5xx: safe to retry) or GatewayRejected (4xx or status=false).
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from schoolpay.core.config import Settings, settings
from schoolpay.core.exceptions import GatewayRejected, GatewayUnavailable
from schoolpay.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Gateway statuses that are final; anything else (abandoned, ongoing, queued...) may still settle
_SUCCESS_STATUSES = {"success"}
_FAILED_STATUSES = {"failed", "reversed"}


@dataclass(frozen=True)
class GatewayInitialization:
    authorization_url: str
    access_code: str
    reference: str


@dataclass(frozen=True)
class GatewayVerification:
    """Structured result of a verify call. status is success, failed or pending."""

    reference: str
    status: str
    amount_minor: int
    paid_at: Optional[datetime]
    channel: Optional[str]
    gateway_reference: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    gateway_status: Optional[str] = None


def parse_gateway_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("gateway_datetime_unparseable", extra={"value": str(value)})
        return None


def normalise_gateway_status(status: Optional[str]) -> str:
    if status in _SUCCESS_STATUSES:
        return "success"
    if status in _FAILED_STATUSES:
        return "failed"
    return "pending"


class PaystackClient:
    """Stateless client; one instance may be shared across requests."""

    def __init__(self, config: Settings = settings, client: Optional[httpx.AsyncClient] = None) -> None:
        if not config.paystack_secret_key:
            raise ValueError("Paystack secret key is not configured")
        self._secret_key = config.paystack_secret_key
        self._base_url = config.paystack_base_url.rstrip("/")
        self._callback_url = config.paystack_callback_url
        self._timeout = config.gateway_timeout_seconds
        self._client = client

    async def initialize(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: Dict[str, Any],
        currency: str = "NGN",
        subaccount: Optional[str] = None,
        transaction_charge_minor: Optional[int] = None,
        callback_url: Optional[str] = None,
    ) -> GatewayInitialization:
        """Create a transaction and return the checkout URL."""
        payload: Dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
        }
        if subaccount:
            # School subaccount receives the fee; platform keeps the flat charge
            payload["subaccount"] = subaccount
            if transaction_charge_minor is not None:
                payload["transaction_charge"] = transaction_charge_minor
            payload["bearer"] = "account"
        callback_value = callback_url or self._callback_url
        if callback_value:
            payload["callback_url"] = str(callback_value)

        logger.info(
            "paystack_initialize_request",
            extra={"reference": reference, "amount_minor": amount_minor, "subaccount": subaccount},
        )

        async def _execute(client_obj: httpx.AsyncClient) -> GatewayInitialization:
            body = await self._request(client_obj, "POST", "/transaction/initialize", reference, json=payload)
            data = body.get("data") or {}
            authorization_url = data.get("authorization_url")
            access_code = data.get("access_code")
            if not authorization_url or not access_code:
                raise GatewayRejected("Gateway initialization response missing required fields")
            logger.info("paystack_initialize_success", extra={"reference": reference})
            return GatewayInitialization(
                authorization_url=authorization_url,
                access_code=access_code,
                reference=data.get("reference") or reference,
            )

        return await self._with_client(_execute)

    async def verify(self, reference: str) -> GatewayVerification:
        """Look up a transaction by reference. Unsuccessful payments are returned, not raised."""
        logger.info("paystack_verify_request", extra={"reference": reference})

        async def _execute(client_obj: httpx.AsyncClient) -> GatewayVerification:
            body = await self._request(client_obj, "GET", f"/transaction/verify/{reference}", reference)
            data = body.get("data") or {}
            gateway_status = data.get("status")
            metadata = data.get("metadata")
            verification = GatewayVerification(
                reference=data.get("reference") or reference,
                status=normalise_gateway_status(gateway_status),
                amount_minor=int(data.get("amount") or 0),
                paid_at=parse_gateway_datetime(data.get("paid_at") or data.get("paidAt")),
                channel=data.get("channel"),
                gateway_reference=str(data["id"]) if data.get("id") is not None else None,
                metadata=metadata if isinstance(metadata, dict) else {},
                gateway_status=gateway_status,
            )
            logger.info(
                "paystack_verify_result",
                extra={"reference": reference, "gateway_status": gateway_status},
            )
            return verification

        return await self._with_client(_execute)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """HMAC-SHA512 of the raw body with the platform secret, compared in constant time."""
        if not signature_header:
            return False
        computed = hmac.new(self._secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(computed.encode("ascii"), signature_header.encode("utf-8", "replace"))

    async def _with_client(self, execute: Callable[[httpx.AsyncClient], Awaitable[T]]) -> T:
        if self._client is not None:
            return await execute(self._client)
        async with httpx.AsyncClient(timeout=self._timeout) as async_client:
            return await execute(async_client)

    async def _request(
        self,
        client_obj: httpx.AsyncClient,
        method: str,
        path: str,
        reference: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await client_obj.request(
                method, f"{self._base_url}{path}", json=json, headers=self._build_headers()
            )
        except httpx.TimeoutException as exc:
            logger.warning("paystack_timeout", extra={"reference": reference, "path": path})
            raise GatewayUnavailable("Payment gateway timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("paystack_transport_error", extra={"reference": reference, "error": str(exc)})
            raise GatewayUnavailable("Payment gateway is unreachable") from exc

        if response.status_code >= 500:
            logger.warning(
                "paystack_http_error",
                extra={"reference": reference, "status_code": response.status_code},
            )
            raise GatewayUnavailable(f"Payment gateway error ({response.status_code})")
        if response.status_code >= 400:
            message = self._extract_error_message(response)
            logger.warning(
                "paystack_http_error",
                extra={"reference": reference, "status_code": response.status_code, "error_message": message},
            )
            raise GatewayRejected(message)

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayUnavailable("Payment gateway returned an unreadable response") from exc
        if not isinstance(body, dict) or not body.get("status"):
            message = body.get("message") if isinstance(body, dict) else None
            raise GatewayRejected(message or "Payment gateway rejected the request")
        return body

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"Paystack request failed with status {response.status_code}"
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        return f"Paystack request failed with status {response.status_code}"


def get_gateway_client() -> PaystackClient:
    """FastAPI dependency; overridden in tests."""
    return PaystackClient(settings)
