"""
External Ledger Gateway Module

Client for the on-chain settlement service. The lending core only needs one
call from it: submit a transfer and get back a transaction hash. The HTTP
client retries transient failures with exponential backoff; the dry-run
gateway simulates settlement for development and tests.
"""

import hashlib
import httpx
import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

from .currency import Money
from .errors import GatewayError

logger = logging.getLogger("minilend.gateway")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class LedgerOperation(Enum):
    """Transfers the lending core settles on the external ledger"""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BORROW = "borrow"
    REPAY = "repay"


class LedgerGateway(ABC):
    """Submits transfers to the external ledger"""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def submit(self, operation: LedgerOperation, token: str, wallet_address: str,
               amount: Money) -> str:
        """
        Submit a transfer and return its transaction hash

        Raises:
            GatewayError: If the transfer was not accepted
        """
        pass

    def close(self) -> None:
        pass


class HttpLedgerGateway(LedgerGateway):
    """REST client for the settlement service"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        if not base_url:
            raise GatewayError("Ledger gateway URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "http"

    def submit(self, operation: LedgerOperation, token: str, wallet_address: str,
               amount: Money) -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "operation": operation.value,
            "token": token,
            "wallet": wallet_address,
            "amount": amount.to_decimal_string(),
            "currency": amount.currency.code
        }

        last_error = ""
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.info(f"Retrying {operation.value} submission in {delay:.2f}s "
                            f"(attempt {attempt + 1}/{self.max_retries + 1})")
                self._sleep(delay)

            try:
                response = self._client.post(
                    f"{self.base_url}/transactions",
                    json=payload,
                    headers=headers
                )
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
                logger.warning(f"Ledger gateway {last_error}")
                continue

            if response.status_code in (200, 201, 202):
                try:
                    data = response.json()
                except ValueError as e:
                    raise GatewayError(
                        f"Ledger gateway returned a non-JSON body for {operation.value}: {e}"
                    ) from e
                if not isinstance(data, dict):
                    raise GatewayError(f"Ledger gateway response is not an object: {data!r}")
                tx_hash = data.get("txHash") or data.get("tx_hash")
                if not tx_hash:
                    raise GatewayError(f"Ledger gateway response has no transaction hash: {data}")
                logger.debug(f"Submitted {operation.value} {amount.to_string()} as {tx_hash}")
                return tx_hash

            last_error = f"HTTP {response.status_code}: {response.text}"
            if response.status_code not in RETRYABLE_STATUS_CODES:
                logger.error(f"Ledger gateway rejected {operation.value}: {last_error}")
                raise GatewayError(f"Ledger gateway rejected {operation.value}: {last_error}")
            logger.warning(f"Ledger gateway returned {last_error}")

        raise GatewayError(
            f"Ledger gateway failed after {self.max_retries + 1} attempts: {last_error}"
        )

    def health_check(self) -> bool:
        """Check if the settlement service is reachable"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()


class DryRunLedgerGateway(LedgerGateway):
    """Simulated gateway that generates deterministic fake transaction hashes"""

    def __init__(self):
        self._sequence = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "dryrun"

    def submit(self, operation: LedgerOperation, token: str, wallet_address: str,
               amount: Money) -> str:
        with self._lock:
            self._sequence += 1
            sequence = self._sequence
        seed = (f"{operation.value}:{token.lower()}:{wallet_address.lower()}:"
                f"{amount.to_decimal_string()}:{sequence}")
        return "0x" + hashlib.sha256(seed.encode()).hexdigest()


def create_gateway(url: str = "", timeout: float = 10.0, api_key: Optional[str] = None,
                   max_retries: int = 3, backoff_seconds: float = 0.5) -> LedgerGateway:
    """HTTP gateway when a URL is configured, dry-run otherwise"""
    if not url:
        logger.info("No ledger gateway URL configured, using dry-run gateway")
        return DryRunLedgerGateway()
    return HttpLedgerGateway(
        base_url=url,
        timeout=timeout,
        api_key=api_key or None,
        max_retries=max_retries,
        backoff_seconds=backoff_seconds
    )
