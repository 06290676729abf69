"""
Base Payment Gateway
Abstract class defining the interface for PSP clients
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Any, Optional, List, Mapping

from app.utils.money import to_decimal


class PspError(Exception):
    """Base error for PSP interactions"""

    def __init__(self, message: str, code: Optional[str] = None, raw: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.raw = raw


class PspAuthError(PspError):
    """Token acquisition failed"""


class PspOrderError(PspError):
    """Order creation failed"""


class PspStatusError(PspError):
    """Status lookup failed (anything other than 404)"""


class InvalidSignature(PspError):
    """Callback signature / authorization did not verify"""


class InvalidCallback(PspError):
    """Callback body is malformed or lacks required fields"""


@dataclass
class AccessToken:
    """Cached OAuth2 access token"""
    access_token: str
    expires_at: float           # Absolute epoch seconds
    token_type: str = "O-Bearer"

    def is_expiring(self, margin_seconds: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at - margin_seconds


@dataclass
class OrderRequest:
    """Order creation input"""
    merchant_order_id: str
    amount_minor: int
    expire_after_seconds: int
    redirect_url: str
    message: str = ""
    meta_info: Dict[str, str] = field(default_factory=dict)


@dataclass
class OrderResult:
    """Result of creating a payment order"""
    psp_order_id: Optional[str]
    redirect_url: Optional[str]
    state: Optional[str] = None
    expire_at: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderStatusResult:
    """Result of checking payment status"""
    state: str
    code: Optional[str] = None
    message: Optional[str] = None
    amount_minor: Optional[int] = None
    psp_order_id: Optional[str] = None
    psp_transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    pending_unseen: bool = False

    PENDING_UNSEEN = "PENDING_UNSEEN"

    @classmethod
    def unseen(cls, raw: Optional[Dict[str, Any]] = None) -> "OrderStatusResult":
        """Upstream 404: payer has not reached the PSP yet"""
        return cls(state=cls.PENDING_UNSEEN, pending_unseen=True, raw=raw or {})


@dataclass
class CallbackEvent:
    """Canonical inbound event, independent of callback shape"""
    merchant_transaction_id: str
    state: str
    source: str                         # "legacy" or "webhook"
    psp_order_id: Optional[str] = None
    psp_transaction_id: Optional[str] = None
    amount_minor: Optional[int] = None
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    payment_method: Optional[str] = None
    event: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class BasePaymentGateway(ABC):
    """
    Abstract base class for PSP clients.
    All gateways must implement these methods.
    """

    gateway_id: str = "base"
    gateway_name: str = "Base Gateway"

    MIN_AMOUNT = Decimal("1")
    MAX_AMOUNT = Decimal("100000")

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize gateway with configuration.

        Args:
            config: Gateway configuration including credentials and endpoints
        """
        self.config = config
        self._validate_config()

    @abstractmethod
    def _validate_config(self):
        """Validate required configuration parameters"""
        pass

    @abstractmethod
    async def acquire_token(self) -> AccessToken:
        """Return a valid access token, refreshing when needed"""
        pass

    @abstractmethod
    async def create_order(self, order: OrderRequest) -> OrderResult:
        """
        Create a payment order.

        Raises:
            PspAuthError: token could not be obtained
            PspOrderError: upstream rejected the order
        """
        pass

    @abstractmethod
    async def get_order_status(self, merchant_order_id: str) -> OrderStatusResult:
        """
        Get payment order status.

        Returns OrderStatusResult.unseen() on upstream 404.

        Raises:
            PspStatusError: any other upstream failure
        """
        pass

    @abstractmethod
    def verify_callback(self, headers: Mapping[str, str], body: Dict[str, Any]) -> CallbackEvent:
        """
        Verify an inbound callback and normalize it.

        Raises:
            InvalidSignature: checksum / authorization mismatch
            InvalidCallback: required fields missing
        """
        pass

    @abstractmethod
    def generate_merchant_transaction_id(self, user_id: str, appointment_id: str) -> str:
        """Unique merchant-side id for one payment attempt"""
        pass

    def validate_amount(self, amount: Any) -> Optional[str]:
        """Return an error message when the amount is outside gateway limits"""
        value = to_decimal(amount)
        if value < self.MIN_AMOUNT:
            return f"Minimum payment amount is ₹{self.MIN_AMOUNT}"
        if value > self.MAX_AMOUNT:
            return f"Maximum payment amount is ₹{self.MAX_AMOUNT:,}"
        return None

    def get_payment_methods(self) -> List[Dict[str, str]]:
        """Payment methods exposed on the hosted checkout"""
        return []
