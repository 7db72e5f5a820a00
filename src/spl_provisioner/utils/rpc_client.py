"""
JSON-RPC boundary for the ledger network.

Defines the LedgerRpc protocol the core depends on and JsonRpcClient, the
httpx implementation of it. Every response is narrowed into a small typed
value; anything with an unexpected shape is rejected as TransportError.

No retry loops here. Callers decide what to retry (see retrier.py).
"""

import base64
import itertools
import logging
from typing import Any, Protocol, runtime_checkable

import httpx
from solders.pubkey import Pubkey

from ..errors import (
    DeadlineExceededError,
    RateLimitedError,
    RpcResponseError,
    TransportError,
    is_rate_limit_message,
)
from ..models import AccountInfo, LifetimeBinding, SignatureStatus, SignatureStatusInfo, TokenAmount

logger = logging.getLogger(__name__)


@runtime_checkable
class LedgerRpc(Protocol):
    """Capability set the provisioner consumes from the ledger RPC."""

    async def get_balance(self, address: Pubkey) -> int: ...

    async def get_account_info(self, address: Pubkey) -> AccountInfo | None: ...

    async def get_token_account_balance(self, address: Pubkey) -> TokenAmount: ...

    async def get_token_supply(self, mint: Pubkey) -> TokenAmount: ...

    async def get_latest_blockhash(self) -> LifetimeBinding: ...

    async def get_block_height(self) -> int: ...

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int: ...

    async def send_transaction(self, raw: bytes) -> str: ...

    async def get_signature_status(self, signature: str) -> SignatureStatusInfo: ...

    async def request_airdrop(self, address: Pubkey, lamports: int) -> str: ...


class JsonRpcClient:
    """Ledger JSON-RPC client implementing the LedgerRpc protocol.

    A fresh httpx.AsyncClient is opened per call, so the client holds no
    connection state and can be shared freely.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        commitment: str = "confirmed",
        transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        """
        Initialize the client.

        Args:
            url: JSON-RPC endpoint
            timeout: Deadline for each call in seconds
            commitment: Commitment level for reads and preflight
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.url: str = url
        self.timeout: float = timeout
        self.commitment: str = commitment
        self._transport = transport
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Post one JSON-RPC request and return its ``result`` member.

        Raises:
            RateLimitedError: HTTP 429 or a throttling error object
            DeadlineExceededError: The call exceeded the deadline
            RpcResponseError: The node returned a JSON-RPC error object
            TransportError: Any other network or payload failure
        """
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        logger.debug(f"RPC {method} -> {self.url}")

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response: httpx.Response = await client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise DeadlineExceededError(f"{method} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"{method}: 429 Too Many Requests", code=429)
        if response.is_error:
            raise TransportError(
                f"{method}: HTTP {response.status_code}", code=response.status_code
            )

        try:
            body: Any = response.json()
        except ValueError as e:
            raise TransportError(f"{method}: response is not valid JSON") from e

        match body:
            case {"error": {"code": int(code), "message": str(message), **rest}}:
                if code == 429 or is_rate_limit_message(message):
                    raise RateLimitedError(f"{method}: {message}", code=code)
                raise RpcResponseError(f"{method}: {message}", code=code, data=rest.get("data"))
            case {"error": error}:
                raise TransportError(f"{method}: malformed error object {error!r}")
            case {"result": result}:
                return result
            case _:
                raise TransportError(f"{method}: response has neither result nor error")

    async def get_balance(self, address: Pubkey) -> int:
        result = await self._call("getBalance", [str(address), {"commitment": self.commitment}])
        return _parse_uint(_context_value(result, "getBalance"), "getBalance")

    async def get_account_info(self, address: Pubkey) -> AccountInfo | None:
        """Fetch allocated state for an address, None when nothing is allocated."""
        result = await self._call(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self.commitment}],
        )
        return _parse_account_info(_context_value(result, "getAccountInfo"))

    async def get_token_account_balance(self, address: Pubkey) -> TokenAmount:
        result = await self._call(
            "getTokenAccountBalance", [str(address), {"commitment": self.commitment}]
        )
        return _parse_token_amount(
            _context_value(result, "getTokenAccountBalance"), "getTokenAccountBalance"
        )

    async def get_token_supply(self, mint: Pubkey) -> TokenAmount:
        """Total amount issued for a mint, in base units."""
        result = await self._call("getTokenSupply", [str(mint), {"commitment": self.commitment}])
        return _parse_token_amount(_context_value(result, "getTokenSupply"), "getTokenSupply")

    async def get_latest_blockhash(self) -> LifetimeBinding:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        match _context_value(result, "getLatestBlockhash"):
            case {"blockhash": str(blockhash), "lastValidBlockHeight": height}:
                return LifetimeBinding(
                    blockhash=blockhash,
                    last_valid_block_height=_parse_uint(height, "lastValidBlockHeight"),
                )
            case value:
                raise TransportError(f"getLatestBlockhash: unexpected value {value!r}")

    async def get_block_height(self) -> int:
        result = await self._call("getBlockHeight", [{"commitment": self.commitment}])
        return _parse_uint(result, "getBlockHeight")

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        result = await self._call("getMinimumBalanceForRentExemption", [size])
        return _parse_uint(result, "getMinimumBalanceForRentExemption")

    async def send_transaction(self, raw: bytes) -> str:
        """Submit a signed, serialized transaction and return its signature."""
        encoded = base64.b64encode(raw).decode("ascii")
        result = await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )
        return _parse_signature(result, "sendTransaction")

    async def get_signature_status(self, signature: str) -> SignatureStatusInfo:
        result = await self._call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        match _context_value(result, "getSignatureStatuses"):
            case [entry]:
                return _parse_signature_status(entry)
            case value:
                raise TransportError(f"getSignatureStatuses: unexpected value {value!r}")

    async def request_airdrop(self, address: Pubkey, lamports: int) -> str:
        result = await self._call(
            "requestAirdrop", [str(address), lamports, {"commitment": self.commitment}]
        )
        return _parse_signature(result, "requestAirdrop")


# =====================================================================
# Response parsing (pure functions, no I/O)
# =====================================================================


def _context_value(result: Any, method: str) -> Any:
    """Unwrap the ``{"context": ..., "value": ...}`` envelope."""
    if not isinstance(result, dict) or "value" not in result:
        raise TransportError(f"{method}: expected a context/value envelope, got {result!r}")
    return result["value"]


def _parse_uint(value: Any, what: str) -> int:
    """Accept a non-negative integer (or decimal string of one)."""
    if isinstance(value, str) and value.isdigit():
        return int(value)
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    raise TransportError(f"{what}: expected a non-negative integer, got {value!r}")


def _parse_signature(value: Any, method: str) -> str:
    if not isinstance(value, str) or not value:
        raise TransportError(f"{method}: expected a signature string, got {value!r}")
    return value


def _parse_account_info(value: Any) -> AccountInfo | None:
    match value:
        case None:
            return None
        case {"lamports": lamports, "owner": str(owner), **rest}:
            space = rest.get("space")
            return AccountInfo(
                lamports=_parse_uint(lamports, "lamports"),
                owner=owner,
                executable=bool(rest.get("executable", False)),
                data_len=_parse_uint(space, "space") if space is not None else 0,
            )
        case _:
            raise TransportError(f"getAccountInfo: unexpected value {value!r}")


def _parse_token_amount(value: Any, method: str) -> TokenAmount:
    match value:
        case {"amount": amount, "decimals": decimals}:
            return TokenAmount(
                amount=_parse_uint(amount, "amount"),
                decimals=_parse_uint(decimals, "decimals"),
            )
        case _:
            raise TransportError(f"{method}: unexpected value {value!r}")


def _parse_signature_status(entry: Any) -> SignatureStatusInfo:
    match entry:
        case None:
            return SignatureStatusInfo(status=SignatureStatus.UNKNOWN)
        case {"confirmationStatus": str(level), **rest}:
            try:
                status = SignatureStatus(level)
            except ValueError:
                raise TransportError(f"Unknown confirmation status {level!r}") from None
            return SignatureStatusInfo(status=status, err=rest.get("err"), slot=rest.get("slot"))
        case {"confirmationStatus": None, **rest}:
            # Older nodes omit the level; a null confirmations count means rooted
            status = (
                SignatureStatus.FINALIZED
                if rest.get("confirmations") is None
                else SignatureStatus.PROCESSED
            )
            return SignatureStatusInfo(status=status, err=rest.get("err"), slot=rest.get("slot"))
        case _:
            raise TransportError(f"getSignatureStatuses: unexpected entry {entry!r}")
