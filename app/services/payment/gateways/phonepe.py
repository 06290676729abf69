"""
PhonePe Payment Gateway Implementation
Implements the BasePaymentGateway for PhonePe PG (Standard Checkout v2)

- OAuth2 client_credentials token with single-flight refresh
- Order creation (PG_CHECKOUT) and order status polling
- Legacy X-VERIFY status endpoint when only salt credentials are configured
- Callback verification for both the legacy checksum body and the v2 webhook
"""
import os
import json
import time
import base64
import hmac
import hashlib
import asyncio
import httpx
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Mapping
from dotenv import load_dotenv

from app.services.payment.gateways.base import (
    BasePaymentGateway,
    AccessToken,
    OrderRequest,
    OrderResult,
    OrderStatusResult,
    CallbackEvent,
    PspAuthError,
    PspOrderError,
    PspStatusError,
    InvalidSignature,
    InvalidCallback,
)

load_dotenv()


@dataclass(frozen=True)
class PhonePeEnvironment:
    """Endpoint set for one PhonePe environment"""
    name: str
    token_url: str
    order_url: str
    status_base_url: str
    legacy_status_base_url: str
    description: str


PHONEPE_ENVIRONMENTS: Dict[str, PhonePeEnvironment] = {
    "PRODUCTION": PhonePeEnvironment(
        name="Production",
        token_url="https://api.phonepe.com/apis/identity-manager/v1/oauth/token",
        order_url="https://api.phonepe.com/apis/pg/checkout/v2/pay",
        status_base_url="https://api.phonepe.com/apis/pg/checkout/v2/order",
        legacy_status_base_url="https://api.phonepe.com/apis/hermes/pg/v1/status",
        description="Live PhonePe environment - Real money transactions",
    ),
    "SANDBOX": PhonePeEnvironment(
        name="Sandbox/Testing",
        token_url="https://api-preprod.phonepe.com/apis/pg-sandbox/v1/oauth/token",
        order_url="https://api-preprod.phonepe.com/apis/pg-sandbox/checkout/v2/pay",
        status_base_url="https://api-preprod.phonepe.com/apis/pg-sandbox/checkout/v2/order",
        legacy_status_base_url="https://api-preprod.phonepe.com/apis/hermes/pg/v1/status",
        description="Testing environment - No real money transactions",
    ),
}


def resolve_environment(name: Optional[str]) -> PhonePeEnvironment:
    """Pick the endpoint set; unknown names are a startup error"""
    key = (name or "PRODUCTION").strip().upper()
    if key not in PHONEPE_ENVIRONMENTS:
        raise ValueError(
            f"Invalid PHONEPE_ENVIRONMENT: {name}. Expected one of {list(PHONEPE_ENVIRONMENTS.keys())}"
        )
    return PHONEPE_ENVIRONMENTS[key]


class PhonePeGateway(BasePaymentGateway):
    """
    PhonePe Payment Gateway Implementation

    The instance owns the token cache, so it is shared process-wide
    through PaymentGatewayFactory.
    """

    gateway_id = "phonepe"
    gateway_name = "PhonePe"

    ORDER_TIMEOUT = 10.0
    STATUS_TIMEOUT = 5.0
    TOKEN_TIMEOUT = 10.0
    TOKEN_SAFETY_MARGIN = 60            # seconds before expires_at
    LEGACY_STATUS_PATH = "/pg/v1/status"

    _last_txn_millis = 0

    def __init__(self, config: Optional[Dict[str, Any]] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize PhonePe gateway"""
        env_config = self._load_config_from_env()
        if config is not None:
            env_config.update({k: v for k, v in config.items() if v is not None})

        super().__init__(env_config)

        self.environment = resolve_environment(self.config.get("environment"))
        self.client_id = self.config.get("client_id")
        self.client_secret = self.config.get("client_secret")
        self.client_version = str(self.config.get("client_version") or "1")
        self.merchant_id = self.config.get("merchant_id")
        self.salt_key = self.config.get("salt_key")
        self.salt_index = str(self.config.get("salt_index") or "1")
        self.redirect_url = self.config.get("redirect_url")
        self.callback_url = self.config.get("callback_url")
        self.webhook_username = self.config.get("webhook_username")
        self.webhook_password = self.config.get("webhook_password")

        self._transport = transport
        self._token: Optional[AccessToken] = None
        self._token_lock = asyncio.Lock()

    def _load_config_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        return {
            "environment": os.getenv("PHONEPE_ENVIRONMENT", "PRODUCTION"),
            "client_id": os.getenv("PHONEPE_CLIENT_ID"),
            "client_secret": os.getenv("PHONEPE_CLIENT_SECRET"),
            "client_version": os.getenv("PHONEPE_CLIENT_VERSION", "1"),
            "merchant_id": os.getenv("PHONEPE_MERCHANT_ID"),
            "salt_key": os.getenv("PHONEPE_SALT_KEY"),
            "salt_index": os.getenv("PHONEPE_SALT_INDEX", "1"),
            "redirect_url": os.getenv("PHONEPE_REDIRECT_URL", "http://localhost:3000/payment/status"),
            "callback_url": os.getenv("PHONEPE_CALLBACK_URL"),
            "webhook_username": os.getenv("PHONEPE_WEBHOOK_USERNAME"),
            "webhook_password": os.getenv("PHONEPE_WEBHOOK_PASSWORD"),
        }

    def _validate_config(self):
        """Either OAuth2 client credentials or legacy salt credentials are required"""
        has_oauth = self.config.get("client_id") and self.config.get("client_secret")
        has_legacy = self.config.get("merchant_id") and self.config.get("salt_key")
        if not has_oauth and not has_legacy:
            raise ValueError(
                "PhonePe credentials missing: set PHONEPE_CLIENT_ID/PHONEPE_CLIENT_SECRET "
                "or PHONEPE_MERCHANT_ID/PHONEPE_SALT_KEY"
            )
        if not has_oauth:
            print("[WARN] PhonePe OAuth2 credentials not configured, status checks use the legacy endpoint")

    @property
    def has_oauth_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def has_legacy_credentials(self) -> bool:
        return bool(self.merchant_id and self.salt_key)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    # ------------------------------------------------------------------
    # Token cache
    # ------------------------------------------------------------------

    async def acquire_token(self) -> AccessToken:
        """Return the cached token, refreshing it once for all concurrent callers"""
        token = self._token
        if token and not token.is_expiring(self.TOKEN_SAFETY_MARGIN):
            return token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if token and not token.is_expiring(self.TOKEN_SAFETY_MARGIN):
                return token
            self._token = await self._fetch_token()
            return self._token

    def invalidate_token(self):
        self._token = None

    async def _fetch_token(self) -> AccessToken:
        if not self.has_oauth_credentials:
            raise PspAuthError("PhonePe client credentials are not configured", code="NOT_CONFIGURED")

        form = {
            "client_id": self.client_id,
            "client_version": self.client_version,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
        }

        try:
            async with self._client(self.TOKEN_TIMEOUT) as client:
                response = await client.post(
                    self.environment.token_url,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            raise PspAuthError(f"Token request failed: {str(e)}", code="NETWORK_ERROR")

        data = self._json(response)
        if response.status_code != 200 or not data.get("access_token"):
            message = data.get("message") or data.get("error_description") or "Failed to obtain PhonePe access token"
            raise PspAuthError(message, code=data.get("code") or str(response.status_code), raw=data)

        expires_at = data.get("expires_at")
        if not expires_at:
            issued_at = data.get("issued_at") or time.time()
            expires_at = float(issued_at) + float(data.get("expires_in") or 0)

        print(f"[INFO] PhonePe access token refreshed ({self.environment.name})")
        return AccessToken(
            access_token=data["access_token"],
            expires_at=float(expires_at),
            token_type=data.get("token_type") or "O-Bearer",
        )

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.acquire_token()
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"O-Bearer {token.access_token}",
        }

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, order: OrderRequest) -> OrderResult:
        """Create a PG_CHECKOUT order and return the hosted payment URL"""
        payload = {
            "merchantOrderId": order.merchant_order_id,
            "amount": order.amount_minor,
            "expireAfter": order.expire_after_seconds,
            "metaInfo": {
                "udf1": order.meta_info.get("udf1", ""),
                "udf2": order.meta_info.get("udf2", ""),
                "udf3": order.meta_info.get("udf3", ""),
            },
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": order.message,
                "merchantUrls": {"redirectUrl": order.redirect_url},
            },
        }

        headers = await self._auth_headers()

        try:
            async with self._client(self.ORDER_TIMEOUT) as client:
                response = await client.post(self.environment.order_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise PspOrderError(f"PhonePe order request failed: {str(e)}", code="NETWORK_ERROR")

        data = self._json(response)

        if response.status_code == 401:
            self.invalidate_token()
            raise PspAuthError(data.get("message") or "PhonePe rejected the access token", code="UNAUTHORIZED", raw=data)

        if response.status_code not in (200, 201):
            raise PspOrderError(
                data.get("message") or f"PhonePe order creation failed (HTTP {response.status_code})",
                code=data.get("code") or str(response.status_code),
                raw=data,
            )

        redirect_url = data.get("redirectUrl")
        if not redirect_url:
            raise PspOrderError("PhonePe did not return a payment URL", code="NO_REDIRECT_URL", raw=data)

        return OrderResult(
            psp_order_id=data.get("orderId"),
            redirect_url=redirect_url,
            state=data.get("state"),
            expire_at=data.get("expireAt"),
            raw=data,
        )

    async def get_order_status(self, merchant_order_id: str) -> OrderStatusResult:
        """Query order status; OAuth2 endpoint first, legacy endpoint as fallback"""
        if self.has_oauth_credentials:
            return await self._get_order_status_v2(merchant_order_id)
        if self.has_legacy_credentials:
            return await self._get_order_status_legacy(merchant_order_id)
        raise PspStatusError("PhonePe credentials are not configured", code="NOT_CONFIGURED")

    async def _get_order_status_v2(self, merchant_order_id: str) -> OrderStatusResult:
        url = f"{self.environment.status_base_url}/{merchant_order_id}/status"
        headers = await self._auth_headers()

        try:
            async with self._client(self.STATUS_TIMEOUT) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise PspStatusError(f"PhonePe status request failed: {str(e)}", code="NETWORK_ERROR")

        data = self._json(response)

        if response.status_code == 404:
            return OrderStatusResult.unseen(data)
        if response.status_code == 401:
            self.invalidate_token()
            raise PspStatusError(data.get("message") or "PhonePe rejected the access token", code="UNAUTHORIZED", raw=data)
        if response.status_code != 200 or not data.get("state"):
            raise PspStatusError(
                data.get("message") or f"PhonePe status check failed (HTTP {response.status_code})",
                code=data.get("code") or str(response.status_code),
                raw=data,
            )

        details = data.get("paymentDetails") or []
        latest = details[-1] if details else {}

        return OrderStatusResult(
            state=data["state"],
            code=data.get("errorCode") or latest.get("errorCode"),
            message=data.get("detailedErrorCode") or latest.get("detailedErrorCode"),
            amount_minor=data.get("amount"),
            psp_order_id=data.get("orderId"),
            psp_transaction_id=latest.get("transactionId"),
            payment_method=latest.get("paymentMode"),
            raw=data,
        )

    async def _get_order_status_legacy(self, merchant_order_id: str) -> OrderStatusResult:
        path = f"{self.LEGACY_STATUS_PATH}/{self.merchant_id}/{merchant_order_id}"
        url = f"{self.environment.legacy_status_base_url}/{self.merchant_id}/{merchant_order_id}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-VERIFY": self.generate_checksum(path),
            "X-MERCHANT-ID": self.merchant_id,
        }

        try:
            async with self._client(self.STATUS_TIMEOUT) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise PspStatusError(f"PhonePe status request failed: {str(e)}", code="NETWORK_ERROR")

        body = self._json(response)

        if response.status_code == 404:
            return OrderStatusResult.unseen(body)

        data = body.get("data") or {}
        if response.status_code != 200 or not data.get("state"):
            raise PspStatusError(
                body.get("message") or f"PhonePe status check failed (HTTP {response.status_code})",
                code=body.get("code") or str(response.status_code),
                raw=body,
            )

        return OrderStatusResult(
            state=data["state"],
            code=data.get("responseCode") or body.get("code"),
            message=body.get("message"),
            amount_minor=data.get("amount"),
            psp_transaction_id=data.get("transactionId"),
            payment_method=(data.get("paymentInstrument") or {}).get("type"),
            raw=body,
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def verify_callback(self, headers: Mapping[str, str], body: Dict[str, Any]) -> CallbackEvent:
        """Accept the legacy checksum body or the OAuth2 webhook body"""
        if not isinstance(body, dict):
            raise InvalidCallback("Callback body must be a JSON object")

        if "response" in body or "checksum" in body:
            return self._verify_legacy_callback(headers, body)
        if "payload" in body or "event" in body:
            return self._verify_webhook_callback(headers, body)

        raise InvalidCallback("Unrecognized callback format")

    def _verify_legacy_callback(self, headers: Mapping[str, str], body: Dict[str, Any]) -> CallbackEvent:
        response = body.get("response")
        headers_lower = {k.lower(): v for k, v in headers.items()}
        checksum = body.get("checksum") or headers_lower.get("x-verify")

        if not isinstance(response, str) or not response:
            raise InvalidCallback("Missing response in callback")
        if not isinstance(checksum, str) or not checksum:
            raise InvalidSignature("Missing checksum in callback")
        if not self.verify_checksum(response, checksum):
            raise InvalidSignature("Invalid checksum")

        try:
            decoded = json.loads(base64.b64decode(response, validate=True))
        except (ValueError, TypeError) as e:
            raise InvalidCallback(f"Callback response is not valid base64 JSON: {str(e)}")

        data = decoded.get("data") if isinstance(decoded, dict) else None
        if not isinstance(data, dict):
            raise InvalidCallback("Callback response has no data")

        merchant_transaction_id = data.get("merchantTransactionId")
        state = data.get("state")
        if not merchant_transaction_id or not state:
            raise InvalidCallback("Callback data missing merchantTransactionId or state")

        return CallbackEvent(
            merchant_transaction_id=merchant_transaction_id,
            state=state,
            source="legacy",
            psp_transaction_id=data.get("transactionId"),
            amount_minor=data.get("amount"),
            response_code=data.get("responseCode") or decoded.get("code"),
            response_message=data.get("responseMessage") or decoded.get("message"),
            payment_method=(data.get("paymentInstrument") or {}).get("type"),
            raw=decoded,
        )

    def _verify_webhook_callback(self, headers: Mapping[str, str], body: Dict[str, Any]) -> CallbackEvent:
        if not (self.webhook_username and self.webhook_password):
            raise InvalidSignature("Webhook credentials are not configured")

        headers_lower = {k.lower(): v for k, v in headers.items()}
        authorization = (headers_lower.get("authorization") or "").strip()
        if authorization.lower().startswith("bearer "):
            authorization = authorization[7:].strip()
        if not authorization:
            raise InvalidSignature("Missing Authorization header")

        expected = hashlib.sha256(
            f"{self.webhook_username}:{self.webhook_password}".encode("utf-8")
        ).hexdigest()
        if not hmac.compare_digest(expected, authorization):
            raise InvalidSignature("Invalid webhook authorization")

        payload = body.get("payload")
        if not isinstance(payload, dict):
            raise InvalidCallback("Webhook payload missing")

        merchant_order_id = payload.get("merchantOrderId")
        state = payload.get("state")
        if not merchant_order_id or not state:
            raise InvalidCallback("Webhook payload missing merchantOrderId or state")

        details = payload.get("paymentDetails") or []
        latest = details[-1] if details else {}

        return CallbackEvent(
            merchant_transaction_id=merchant_order_id,
            state=state,
            source="webhook",
            psp_order_id=payload.get("orderId"),
            psp_transaction_id=latest.get("transactionId"),
            amount_minor=payload.get("amount"),
            response_code=payload.get("errorCode") or latest.get("errorCode"),
            response_message=payload.get("detailedErrorCode") or latest.get("detailedErrorCode"),
            payment_method=latest.get("paymentMode"),
            event=body.get("event"),
            raw=body,
        )

    # ------------------------------------------------------------------
    # Hash utilities and helpers
    # ------------------------------------------------------------------

    def generate_checksum(self, payload: str) -> str:
        """sha256(payload + saltKey) + '###' + saltIndex"""
        digest = hashlib.sha256((payload + (self.salt_key or "")).encode("utf-8")).hexdigest()
        return f"{digest}###{self.salt_index}"

    def verify_checksum(self, payload: str, checksum: str) -> bool:
        """Byte-exact hash match and matching salt index"""
        if not self.salt_key:
            return False
        received_hash, separator, received_index = checksum.rpartition("###")
        if not separator or not received_hash:
            return False
        expected_hash = hashlib.sha256((payload + self.salt_key).encode("utf-8")).hexdigest()
        hash_ok = hmac.compare_digest(expected_hash.encode("utf-8"), received_hash.encode("utf-8"))
        return hash_ok and received_index == self.salt_index

    @classmethod
    def generate_merchant_transaction_id(cls, user_id: str, appointment_id: str) -> str:
        """TXN_<userId>_<appointmentId>_<epochMillis>, millis strictly increasing per process"""
        millis = int(time.time() * 1000)
        if millis <= cls._last_txn_millis:
            millis = cls._last_txn_millis + 1
        cls._last_txn_millis = millis
        return f"TXN_{user_id}_{appointment_id}_{millis}"

    def get_payment_methods(self) -> List[Dict[str, str]]:
        return [
            {"type": "UPI", "name": "UPI", "description": "Pay using UPI ID or QR code"},
            {"type": "CARD", "name": "Credit/Debit Card", "description": "Pay using credit or debit card"},
            {"type": "NETBANKING", "name": "Net Banking", "description": "Pay using net banking"},
            {"type": "WALLET", "name": "Digital Wallet", "description": "Pay using digital wallet"},
        ]

    def get_environment_info(self) -> Dict[str, Any]:
        return {
            "environment": self.environment.name,
            "description": self.environment.description,
            "oauth_configured": self.has_oauth_credentials,
            "legacy_configured": self.has_legacy_credentials,
            "webhook_auth_configured": bool(self.webhook_username and self.webhook_password),
        }
