import base64
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Optional

import httpx

from app.core.config import Settings
from app.utils.cache import get_cached, set_cached


logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

SUCCESS_CODE = "0"
# Returned by the status query while the payer has not yet answered the prompt.
PROCESSING_ERROR_CODE = "500.001.1001"

# Field limits enforced by the gateway.
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13

# Refresh the access token a minute before the gateway expires it.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class MpesaError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, raw: str | None = None, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw = raw
        self.error_code = error_code


class AuthError(MpesaError):
    """Exchanging the consumer key/secret for an access token failed."""


class GatewayError(MpesaError):
    """An STK push or status query failed or was rejected by the gateway."""

    @property
    def is_pending(self) -> bool:
        return self.error_code == PROCESSING_ERROR_CODE


@dataclass(frozen=True)
class MpesaConfig:
    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    transaction_type: str = "CustomerPayBillOnline"
    country_code: str = "254"
    timeout: float = 15
    retry_count: int = 2
    backoff_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "MpesaConfig":
        environment = str(settings.mpesa_environment or "").strip().lower()
        base_url = PRODUCTION_BASE_URL if environment == "production" else SANDBOX_BASE_URL
        return cls(
            base_url=base_url,
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            shortcode=str(settings.mpesa_shortcode),
            passkey=settings.mpesa_passkey,
            callback_url=settings.mpesa_callback_url,
            transaction_type=settings.mpesa_transaction_type,
            country_code=str(settings.mpesa_country_code),
            timeout=settings.mpesa_timeout_seconds,
            retry_count=max(0, int(settings.mpesa_retry_count)),
        )


@dataclass(frozen=True)
class StkPushResponse:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str

    @classmethod
    def from_payload(cls, data: dict) -> "StkPushResponse":
        return cls(
            merchant_request_id=str(data.get("MerchantRequestID") or ""),
            checkout_request_id=str(data.get("CheckoutRequestID") or ""),
            response_code=str(data.get("ResponseCode", "")).strip(),
            response_description=str(data.get("ResponseDescription") or ""),
            customer_message=str(data.get("CustomerMessage") or ""),
        )


@dataclass(frozen=True)
class StkQueryResponse:
    checkout_request_id: str
    response_code: str
    result_code: Optional[int]
    result_desc: str
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict) -> "StkQueryResponse":
        result_code = data.get("ResultCode")
        try:
            parsed_code = int(str(result_code).strip()) if result_code not in (None, "") else None
        except ValueError:
            parsed_code = None
        return cls(
            checkout_request_id=str(data.get("CheckoutRequestID") or ""),
            response_code=str(data.get("ResponseCode", "")).strip(),
            result_code=parsed_code,
            result_desc=str(data.get("ResultDesc") or data.get("ResponseDescription") or ""),
            raw=data,
        )


def normalize_phone(phone: str, country_code: str = "254") -> str:
    digits = re.sub(r"\D", "", str(phone or ""))
    if not digits:
        raise ValueError("Phone number is required")
    if digits.startswith("0"):
        return country_code + digits[1:]
    if digits.startswith(country_code):
        return digits
    return country_code + digits


def build_timestamp(now: datetime) -> str:
    return now.strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}"
    return base64.b64encode(raw.encode()).decode()


def round_amount(amount) -> int:
    # Half-up, the gateway only accepts whole shillings.
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MpesaClient:
    """Client for the Daraja STK push API.

    Construct one per configuration and hand it to callers; the client holds no
    mutable state besides the shared access-token cache.
    """

    def __init__(
        self,
        config: MpesaConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self._transport = transport
        self._clock = clock or _utcnow

    def _token_cache_key(self) -> str:
        return f"mpesa_token:{self.config.base_url}:{self.config.consumer_key}"

    def _basic_auth(self) -> str:
        token = f"{self.config.consumer_key}:{self.config.consumer_secret}"
        return base64.b64encode(token.encode()).decode()

    def _extract_error(self, response: httpx.Response) -> tuple[str | None, str]:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict):
            code = data.get("errorCode")
            for key in ("errorMessage", "ResponseDescription", "error_description", "message"):
                value = data.get(key)
                if isinstance(value, str) and value.strip():
                    return (str(code) if code else None), value.strip()
        text = (response.text or "").strip()
        return None, (text[:300] if text else f"HTTP {response.status_code}")

    def _send(
        self,
        method: str,
        path: str,
        *,
        headers: dict,
        error_cls: type[MpesaError],
        payload: dict | None = None,
        params: dict | None = None,
        retry_count: int = 0,
        unsent_only: bool = False,
    ) -> dict:
        """Send one request, retrying transient failures up to retry_count times.

        With unsent_only, only failures where the gateway cannot have acted on
        the request are retried: connection errors and 429 throttling.
        """
        url = f"{self.config.base_url}{path}"
        last_exc: MpesaError | None = None
        for attempt in range(retry_count + 1):
            start = time.time()
            try:
                with httpx.Client(timeout=self.config.timeout, transport=self._transport) as client:
                    response = client.request(method, url, json=payload, params=params, headers=headers)
                duration_ms = round((time.time() - start) * 1000, 2)
                logger.info("M-Pesa API %s %s status=%s duration=%sms", method, path, response.status_code, duration_ms)
                if response.status_code >= 400:
                    error_code, message = self._extract_error(response)
                    raise error_cls(message, status_code=response.status_code, raw=response.text, error_code=error_code)
                try:
                    data = response.json()
                except ValueError as exc:
                    raise error_cls("M-Pesa returned invalid JSON response.", status_code=response.status_code, raw=response.text) from exc
                if not isinstance(data, dict):
                    raise error_cls("M-Pesa returned an unexpected response body.", status_code=response.status_code, raw=response.text)
                return data
            except MpesaError as exc:
                last_exc = exc
                # Definitive client errors are not retried.
                if exc.status_code is not None and exc.status_code < 500 and exc.status_code != 429:
                    raise
                if unsent_only and exc.status_code != 429:
                    raise
                if attempt < retry_count:
                    time.sleep(self.config.backoff_seconds * (attempt + 1))
                    continue
                raise
            except httpx.TransportError as exc:
                logger.warning("M-Pesa API %s %s transport error on attempt %s: %s", method, path, attempt + 1, exc)
                last_exc = error_cls("Unable to reach M-Pesa.", raw=str(exc))
                sent = not isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))
                if attempt < retry_count and not (unsent_only and sent):
                    time.sleep(self.config.backoff_seconds * (attempt + 1))
                    continue
                raise last_exc from exc
        raise last_exc or error_cls("M-Pesa request failed.")

    def authenticate(self) -> str:
        cache_key = self._token_cache_key()
        cached = get_cached(cache_key)
        if cached:
            return cached

        data = self._send(
            "GET",
            TOKEN_PATH,
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {self._basic_auth()}"},
            error_cls=AuthError,
            retry_count=self.config.retry_count,
        )
        access_token = data.get("access_token")
        if not access_token:
            raise AuthError("M-Pesa token response did not include an access token.", raw=str(data))

        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        ttl = expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
        if ttl > 0:
            set_cached(cache_key, access_token, ttl_seconds=ttl)
        return access_token

    def _bearer_headers(self, access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    def _credentials(self) -> tuple[str, str]:
        timestamp = build_timestamp(self._clock())
        return timestamp, build_password(self.config.shortcode, self.config.passkey, timestamp)

    def initiate_stk_push(self, phone: str, amount, account_reference: str, transaction_desc: str) -> StkPushResponse:
        msisdn = normalize_phone(phone, self.config.country_code)
        timestamp, password = self._credentials()
        access_token = self.authenticate()

        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": self.config.transaction_type,
            "Amount": round_amount(amount),
            "PartyA": msisdn,
            "PartyB": self.config.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.config.callback_url,
            "AccountReference": str(account_reference or "")[:ACCOUNT_REFERENCE_MAX],
            "TransactionDesc": str(transaction_desc or "")[:TRANSACTION_DESC_MAX],
        }
        data = self._send(
            "POST",
            STK_PUSH_PATH,
            payload=payload,
            headers=self._bearer_headers(access_token),
            error_cls=GatewayError,
            retry_count=self.config.retry_count,
            # A resent push prompts the payer twice under a new CheckoutRequestID.
            unsent_only=True,
        )
        response = StkPushResponse.from_payload(data)
        if response.response_code != SUCCESS_CODE or not response.checkout_request_id:
            raise GatewayError(
                f"STK push rejected: {response.response_description or 'unknown reason'}",
                raw=str(data),
                error_code=response.response_code or None,
            )
        logger.info(
            "STK push accepted checkout_request_id=%s merchant_request_id=%s",
            response.checkout_request_id,
            response.merchant_request_id,
        )
        return response

    def query_stk_status(self, checkout_request_id: str) -> StkQueryResponse:
        timestamp, password = self._credentials()
        access_token = self.authenticate()

        payload: dict[str, Any] = {
            "BusinessShortCode": self.config.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        data = self._send(
            "POST",
            STK_QUERY_PATH,
            payload=payload,
            headers=self._bearer_headers(access_token),
            error_cls=GatewayError,
        )
        return StkQueryResponse.from_payload(data)
