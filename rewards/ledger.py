"""
Ledger gateways.

The ledger is the external system of record for reward tokens. The service
only talks to it through ``LedgerGateway``; every call is issued at most once
and failures surface as ``LedgerGatewayError``. A failure after the request
may have reached the ledger is a ``LedgerOutcomeUnknownError`` instead.
"""

import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger()


class LedgerGatewayError(Exception):
    pass


class LedgerOutcomeUnknownError(LedgerGatewayError):
    """The request may have been applied by the ledger; only its answer was lost."""


class LedgerGateway(ABC):
    @abstractmethod
    def mint(self, to_address: str, value: int, metadata_url: Optional[str] = None) -> str:
        """Mint a token worth ``value`` to ``to_address`` and return its ledger id."""

    @abstractmethod
    def redeem(self, owner_address: str, ledger_token_id: str) -> str:
        """Burn ``ledger_token_id`` on behalf of its owner and return a confirmation id."""

    @abstractmethod
    def balance_of(self, address: str) -> int: ...

    @abstractmethod
    def is_redeemed(self, ledger_token_id: str) -> bool: ...

    def close(self) -> None:
        pass


@dataclass
class LedgerToken:
    owner: str
    value: int
    url: Optional[str] = None
    burned: bool = False


class InMemoryLedgerGateway(LedgerGateway):
    """Simulated ledger: redeeming burns the token and pays its value to the owner."""

    def __init__(self):
        self.tokens: dict[str, LedgerToken] = {}
        self.balances: dict[str, int] = {}
        self._lock = threading.Lock()

    def mint(self, to_address: str, value: int, metadata_url: Optional[str] = None) -> str:
        if value < 0:
            raise LedgerGatewayError("Cannot mint a negative value")
        with self._lock:
            token_id = str(secrets.randbits(256))
            while token_id in self.tokens:
                token_id = str(secrets.randbits(256))
            self.tokens[token_id] = LedgerToken(owner=to_address, value=value, url=metadata_url)
        return token_id

    def redeem(self, owner_address: str, ledger_token_id: str) -> str:
        with self._lock:
            token = self.tokens.get(ledger_token_id)
            if token is None:
                raise LedgerGatewayError(f"Unknown token {ledger_token_id}")
            if token.owner != owner_address:
                raise LedgerGatewayError(f"Token {ledger_token_id} is not owned by {owner_address}")
            if token.burned:
                raise LedgerGatewayError(f"Token {ledger_token_id} already burned")
            token.burned = True
            self.balances[owner_address] = self.balances.get(owner_address, 0) + token.value
        return f"burn-{secrets.token_hex(16)}"

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self.balances.get(address, 0)

    def is_redeemed(self, ledger_token_id: str) -> bool:
        with self._lock:
            token = self.tokens.get(ledger_token_id)
            if token is None:
                raise LedgerGatewayError(f"Unknown token {ledger_token_id}")
            return token.burned


class HttpLedgerGateway(LedgerGateway):
    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("ledger_request_rejected", path=path, status=exc.response.status_code)
            raise LedgerGatewayError(f"Ledger rejected {method} {path}") from exc
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            # Never sent
            logger.warning("ledger_request_failed", path=path, error=type(exc).__name__)
            raise LedgerGatewayError(f"Ledger unreachable for {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("ledger_outcome_unknown", path=path, error=type(exc).__name__)
            raise LedgerOutcomeUnknownError(f"No answer from ledger for {method} {path}") from exc
        except httpx.HTTPError as exc:
            logger.warning("ledger_request_failed", path=path, error=type(exc).__name__)
            raise LedgerGatewayError(f"Ledger request failed for {method} {path}") from exc
        except ValueError as exc:
            raise LedgerOutcomeUnknownError(f"Ledger returned invalid JSON for {path}") from exc

    def _field(self, payload: dict, name: str, error: type[LedgerGatewayError] = LedgerGatewayError):
        if not isinstance(payload, dict) or name not in payload:
            raise error(f"Ledger response missing '{name}'")
        return payload[name]

    def mint(self, to_address: str, value: int, metadata_url: Optional[str] = None) -> str:
        payload = self._call("POST", "/mint", json={"to": to_address, "value": str(value), "url": metadata_url})
        return str(self._field(payload, "token_id"))

    def redeem(self, owner_address: str, ledger_token_id: str) -> str:
        payload = self._call("POST", "/redeem", json={"owner": owner_address, "token_id": ledger_token_id})
        # A 2xx without a confirmation may still have burned the token
        return str(self._field(payload, "confirmation", error=LedgerOutcomeUnknownError))

    def balance_of(self, address: str) -> int:
        payload = self._call("GET", f"/balance/{address}")
        try:
            return int(self._field(payload, "balance"))
        except (TypeError, ValueError) as exc:
            raise LedgerGatewayError("Ledger returned a non-integer balance") from exc

    def is_redeemed(self, ledger_token_id: str) -> bool:
        payload = self._call("GET", f"/tokens/{ledger_token_id}")
        return bool(self._field(payload, "redeemed"))

    def close(self) -> None:
        self.client.close()
