"""Thin async client for the TradeLocker REST API."""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from .config import BrokerSettings
from .logging import get_logger

__all__ = [
    "BrokerAccount",
    "BrokerAuthError",
    "BrokerError",
    "BrokerFetchError",
    "BrokerMarket",
    "TradeLockerClient",
    "parse_balance",
]


logger = get_logger("competition.broker")


class BrokerMarket(str, enum.Enum):
    """Broker environment the stored credentials belong to."""

    LIVE = "live"
    DEMO = "demo"

    @classmethod
    def resolve(cls, value: "BrokerMarket | str | None") -> "BrokerMarket":
        """Map a stored market flag to a market, defaulting to ``live``."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value.strip().lower() == cls.DEMO.value:
            return cls.DEMO
        return cls.LIVE


class BrokerError(RuntimeError):
    """Base class for failed broker calls.

    ``status_code`` is ``None`` when the request never produced a response.
    """

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_network_error(self) -> bool:
        return self.status_code is None

    @property
    def detail(self) -> str:
        if self.status_code is None:
            return str(self)
        if isinstance(self.body, Mapping):
            for key in ("message", "error", "detail"):
                value = self.body.get(key)
                if value:
                    return f"HTTP {self.status_code}: {value}"
        if self.body:
            return f"HTTP {self.status_code}: {self.body}"
        return f"HTTP {self.status_code}"


class BrokerAuthError(BrokerError):
    """The broker rejected the login or could not be reached."""


class BrokerFetchError(BrokerError):
    """The account list could not be fetched after a successful login."""


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_balance(payload: Mapping[str, Any]) -> float:
    """Return the balance reported for one broker account.

    Precedence: ``accountBalance`` when it parses as a finite number, then the
    raw ``balance`` field, then ``0.0``. A parseable ``accountBalance`` of zero
    is a real zero balance and does not fall through.
    """

    primary = _to_float(payload.get("accountBalance"))
    if primary is not None:
        return primary
    fallback = _to_float(payload.get("balance"))
    if fallback is not None:
        return fallback
    return 0.0


def _as_identifier(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class BrokerAccount:
    """Account entry returned by the ``all-accounts`` endpoint."""

    id: str
    acc_num: str
    balance: float
    currency: str = "USD"
    name: str = ""
    equity: float = 0.0
    margin: float = 0.0
    free_margin: float = 0.0
    profit: float = 0.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BrokerAccount":
        account_id = _as_identifier(payload.get("id"))
        acc_num = _as_identifier(payload.get("accNum"))
        name = payload.get("name") or payload.get("accountName") or f"Account {account_id or acc_num}"
        return cls(
            id=account_id,
            acc_num=acc_num,
            balance=parse_balance(payload),
            currency=payload.get("currency") or "USD",
            name=str(name),
            equity=_to_float(payload.get("equity")) or 0.0,
            margin=_to_float(payload.get("margin")) or 0.0,
            free_margin=_to_float(payload.get("freeMargin")) or 0.0,
            profit=_to_float(payload.get("profit")) or 0.0,
        )

    def matches(self, identifier: str | None) -> bool:
        """Return ``True`` when *identifier* equals the long id or the short index."""

        candidate = _as_identifier(identifier)
        if not candidate:
            return False
        return candidate in {self.id, self.acc_num} - {""}


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


class TradeLockerClient:
    """Stateless calls to the broker's token and account-list endpoints.

    Tokens are passed explicitly on every call and never cached. No call is
    retried here.
    """

    def __init__(
        self,
        settings: BrokerSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client

    def base_url(self, market: BrokerMarket | str | None) -> str:
        if BrokerMarket.resolve(market) is BrokerMarket.DEMO:
            return self._settings.demo_base_url
        return self._settings.live_base_url

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._settings.api_key or "",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        client_kwargs: dict[str, Any] = {}
        if self._settings.request_timeout_seconds is not None:
            client_kwargs["timeout"] = self._settings.request_timeout_seconds
        async with httpx.AsyncClient(**client_kwargs) as client:
            return await client.request(method, url, **kwargs)

    async def authenticate(
        self,
        email: str,
        password: str,
        server: str,
        market: BrokerMarket | str | None = BrokerMarket.LIVE,
    ) -> str:
        """Exchange broker credentials for a bearer token."""

        url = f"{self.base_url(market)}/auth/jwt/token"
        try:
            response = await self._send(
                "POST",
                url,
                json={"email": email, "password": password, "server": server},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            logger.warning("broker_auth_transport_error", url=url, error=str(exc))
            raise BrokerAuthError(f"Network error: {exc}") from exc

        body = _response_body(response)
        if not response.is_success:
            raise BrokerAuthError(
                "Broker rejected credentials",
                status_code=response.status_code,
                body=body,
            )

        token = body.get("accessToken") if isinstance(body, Mapping) else None
        if not token:
            raise BrokerAuthError(
                "Broker response did not include an access token",
                status_code=response.status_code,
                body=body,
            )
        return str(token)

    async def fetch_accounts_payload(
        self,
        access_token: str,
        market: BrokerMarket | str | None = BrokerMarket.LIVE,
    ) -> list[Mapping[str, Any]]:
        """Return the raw ``accounts`` entries for *access_token*."""

        url = f"{self.base_url(market)}/auth/jwt/all-accounts"
        try:
            response = await self._send("GET", url, headers=self._headers(access_token))
        except httpx.HTTPError as exc:
            logger.warning("broker_accounts_transport_error", url=url, error=str(exc))
            raise BrokerFetchError(f"Network error: {exc}") from exc

        body = _response_body(response)
        if not response.is_success:
            raise BrokerFetchError(
                "Broker rejected account list request",
                status_code=response.status_code,
                body=body,
            )
        if not isinstance(body, Mapping):
            raise BrokerFetchError(
                "Broker account list was not a JSON object",
                status_code=response.status_code,
                body=body,
            )

        accounts = body.get("accounts") or []
        if not isinstance(accounts, list):
            raise BrokerFetchError(
                "Broker account list has an unexpected shape",
                status_code=response.status_code,
                body=body,
            )
        return [entry for entry in accounts if isinstance(entry, Mapping)]

    async def list_accounts(
        self,
        access_token: str,
        market: BrokerMarket | str | None = BrokerMarket.LIVE,
    ) -> list[BrokerAccount]:
        """Return the broker accounts visible to *access_token*."""

        payload = await self.fetch_accounts_payload(access_token, market)
        return [BrokerAccount.from_payload(entry) for entry in payload]
