"""L1 JSON-RPC client."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog
from hexbytes import HexBytes
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError

from rollup_indexer.config import settings

logger = structlog.get_logger(__name__)


def to_hex(value: Any) -> str:
    """Render bytes-like or hex-string values as lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


@dataclass(frozen=True)
class RawLog:
    """An undecoded event log as returned by eth_getLogs."""
    address: str
    topics: Tuple[str, ...]
    data: bytes
    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_rpc(cls, log: Dict[str, Any]) -> "RawLog":
        """Normalize a web3 log entry (HexBytes, checksum addresses) into plain values."""
        return cls(
            address=str(log["address"]).lower(),
            topics=tuple(to_hex(topic) for topic in log.get("topics", [])),
            data=bytes(HexBytes(log.get("data") or b"")),
            block_number=int(log["blockNumber"]),
            transaction_hash=to_hex(log["transactionHash"]),
            log_index=int(log.get("logIndex") or 0),
        )


class ChainClient:
    """Client for the read-only L1 RPC calls the indexer needs."""

    def __init__(self, rpc_url: str = None, timeout: int = None):
        self.rpc_url = rpc_url or settings.rpc_url
        self.timeout = timeout or settings.rpc_timeout
        self.w3: Optional[AsyncWeb3] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": self.timeout},
            )
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self.w3 is None:
            return
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    def _eth(self):
        if self.w3 is None:
            raise RuntimeError("Client not initialized. Use async context manager.")
        return self.w3.eth

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10)
    )
    async def get_latest_block_number(self) -> int:
        """Get the current chain head."""
        return int(await self._eth().block_number)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10)
    )
    async def get_block_timestamp(self, block_number: int) -> int:
        """Get a block's timestamp in unix seconds."""
        block = await self._eth().get_block(block_number)
        return int(block["timestamp"])

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10)
    )
    async def get_transaction_input(self, tx_hash: str) -> bytes:
        """Get the calldata of a transaction."""
        tx = await self._eth().get_transaction(tx_hash)
        return bytes(HexBytes(tx["input"]))

    @retry(
        retry=retry_if_not_exception_type(ContractLogicError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    async def call(self, address: str, data: bytes) -> bytes:
        """Execute a read-only contract call at the latest block.

        Reverts are raised immediately; only transport failures are retried.
        """
        result = await self._eth().call({
            "to": AsyncWeb3.to_checksum_address(address),
            "data": to_hex(data),
        })
        return bytes(result)

    async def get_logs(self, address: str, topic0: str, from_block: int, to_block: int) -> List[RawLog]:
        """Get logs emitted by one contract for one event signature.

        Provider errors are raised unchanged so callers can classify them.

        Args:
            address: Emitting contract
            topic0: Event signature hash
            from_block: First block (inclusive)
            to_block: Last block (inclusive)

        Returns:
            Logs in the order returned by the node
        """
        logs = await self._eth().get_logs({
            "address": AsyncWeb3.to_checksum_address(address),
            "topics": [topic0],
            "fromBlock": from_block,
            "toBlock": to_block,
        })
        return [RawLog.from_rpc(log) for log in logs]

    async def health_check(self) -> bool:
        """Check if the node is reachable."""
        try:
            await self.get_latest_block_number()
            return True
        except Exception as e:
            logger.error("RPC health check failed", url=self.rpc_url, error=str(e))
            return False
