"""Shared fixtures: a scripted chain client and inbox log builders."""

from typing import Dict, List, Optional, Sequence, Tuple

from eth_abi import encode

from rollup_indexer.chain_client import RawLog
from rollup_indexer.config import Settings
from rollup_indexer.database import Database
from rollup_indexer.events import EVENT_PARAMS, EVENT_TOPICS, EventKind
from rollup_indexer.models import ZERO_ADDRESS
from rollup_indexer.proof_classifier import PROVE_BATCHES_SELECTOR, SUB_PROOFS_TYPE

INBOX = "0x" + "11" * 20
TEE_VERIFIER = "0x" + "a1" * 20
SP1_VERIFIER = "0x" + "a2" * 20
RISC0_VERIFIER = "0x" + "a3" * 20
COMPOSE_VERIFIER = "0x" + "c0" * 20
UNKNOWN_VERIFIER = "0x" + "ee" * 20
PROPOSER = "0x" + "aa" * 20

GENESIS_TIMESTAMP = 1_700_000_000
BLOCK_TIME = 12


def bytes32(value: int) -> bytes:
    return value.to_bytes(32, "big")


def hash32(value: int) -> str:
    return "0x" + bytes32(value).hex()


def tx_hash(value: int) -> str:
    return hash32(0xF0000 + value)


def block_timestamp(block_number: int) -> int:
    return GENESIS_TIMESTAMP + block_number * BLOCK_TIME


def make_log(kind: EventKind, values, block_number: int, tx: str, log_index: int = 0) -> RawLog:
    return RawLog(
        address=INBOX,
        topics=(EVENT_TOPICS[kind],),
        data=encode(EVENT_PARAMS[kind], values),
        block_number=block_number,
        transaction_hash=tx,
        log_index=log_index,
    )


def proposed_log(
    batch_id: int,
    block_number: int,
    proposed_at: Optional[int] = None,
    proposer: str = PROPOSER,
    tx: Optional[str] = None,
    log_index: int = 0,
) -> RawLog:
    if proposed_at is None:
        proposed_at = block_timestamp(block_number)
    info = (
        bytes32(0), [], [], bytes32(0), ZERO_ADDRESS, block_number, 0,
        0, 0, 0, 0, 0, 0, bytes32(0), (0, 0, 0, 0, 0),
    )
    meta = (bytes32(batch_id), proposer, batch_id, proposed_at)
    return make_log(EventKind.PROPOSED, [info, meta, b""], block_number, tx or tx_hash(block_number), log_index)


def proved_log(
    batch_ids: Sequence[int],
    block_hashes: Sequence[int],
    block_number: int,
    verifier: str = SP1_VERIFIER,
    tx: Optional[str] = None,
    log_index: int = 0,
) -> RawLog:
    transitions = [(bytes32(1), bytes32(block_hash), bytes32(2)) for block_hash in block_hashes]
    return make_log(
        EventKind.PROVED,
        [verifier, list(batch_ids), transitions],
        block_number,
        tx or tx_hash(block_number),
        log_index,
    )


def verified_log(batch_id: int, block_hash: int, block_number: int, tx: Optional[str] = None) -> RawLog:
    return make_log(EventKind.VERIFIED, [batch_id, bytes32(block_hash)], block_number, tx or tx_hash(block_number))


def conflicting_log(batch_id: int, block_number: int) -> RawLog:
    old_tran = (bytes32(1), bytes32(3), bytes32(2), PROPOSER, True, 0)
    new_tran = (bytes32(1), bytes32(4), bytes32(2))
    return make_log(EventKind.CONFLICTING, [batch_id, old_tran, new_tran], block_number, tx_hash(block_number))


def prove_batches_input(proof: bytes = b"") -> bytes:
    return PROVE_BATCHES_SELECTOR + encode(["bytes", "bytes"], [b"", proof])


def compose_proof(sub_verifiers: Sequence[str]) -> bytes:
    return encode([SUB_PROOFS_TYPE], [[(verifier, b"\x01\x02") for verifier in sub_verifiers]])


class FakeChainClient:
    """In-memory stand-in for ChainClient.

    Logs are served from a list that tests can edit between runs to simulate
    reorgs. ``log_errors`` are raised by successive get_logs calls before any
    real answer is given.
    """

    def __init__(self, head: int = 0):
        self.head = head
        self.logs: List[RawLog] = []
        self.tx_inputs: Dict[str, bytes] = {}
        self.call_results: Dict[Tuple[str, bytes], bytes] = {}
        self.log_errors: List[Exception] = []
        self.max_log_range: Optional[int] = None
        self.get_logs_calls: List[Tuple[str, int, int]] = []
        self.call_count = 0

    def add(self, log: RawLog, tx_input: Optional[bytes] = None) -> RawLog:
        self.logs.append(log)
        if tx_input is not None:
            self.tx_inputs[log.transaction_hash] = tx_input
        return log

    def remove_tx(self, tx: str):
        self.logs = [log for log in self.logs if log.transaction_hash != tx]

    async def get_latest_block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        return block_timestamp(block_number)

    async def get_transaction_input(self, tx: str) -> bytes:
        return self.tx_inputs.get(tx, prove_batches_input())

    async def call(self, address: str, data: bytes) -> bytes:
        self.call_count += 1
        key = (address.lower(), bytes(data))
        if key not in self.call_results:
            raise ValueError("execution reverted")
        return self.call_results[key]

    async def get_logs(self, address: str, topic0: str, from_block: int, to_block: int) -> List[RawLog]:
        self.get_logs_calls.append((topic0, from_block, to_block))
        if self.log_errors:
            raise self.log_errors.pop(0)
        if self.max_log_range is not None and to_block - from_block + 1 > self.max_log_range:
            raise ValueError(
                f"eth_getLogs is limited to up to a {self.max_log_range} block range"
            )
        return [
            log for log in self.logs
            if log.address == address.lower()
            and log.topics[0] == topic0
            and from_block <= log.block_number <= to_block
        ]


def make_settings(**overrides) -> Settings:
    values = {
        "chain_id": 1,
        "inbox_address": INBOX,
        "database_url": "sqlite+aiosqlite://",
        "start_block": 0,
        "confirmations": 0,
        "reorg_buffer": 10,
        "indexer_chunk_size": 1000,
        "indexer_log_range_limit": None,
        "indexer_lock_ttl_seconds": 600,
        "indexer_max_runtime_seconds": None,
    }
    values.update(overrides)
    return Settings(**values)


async def make_database() -> Database:
    database = Database("sqlite+aiosqlite://")
    await database.connect()
    await database.create_tables()
    return database
