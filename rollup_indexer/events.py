"""Inbox event ABIs and typed log decoders.

Every decoder returns either a typed event or a ``DecodeError`` value
describing why the payload could not be read; malformed logs never raise
out of this module.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from rollup_indexer.chain_client import RawLog, to_hex

BATCH_INFO_TYPE = (
    "(bytes32,(uint16,uint8,bytes32[])[],bytes32[],bytes32,address,uint64,uint64,"
    "uint32,uint32,uint32,uint64,uint64,uint64,bytes32,(uint8,uint8,uint32,uint64,uint32))"
)
BATCH_META_TYPE = "(bytes32,address,uint64,uint64)"
TRANSITION_TYPE = "(bytes32,bytes32,bytes32)"
TRANSITION_STATE_TYPE = "(bytes32,bytes32,bytes32,address,bool,uint48)"

# Positions inside the BatchInfo / BatchMetadata tuples
INFO_PROPOSED_IN = 5
META_PROPOSER = 1
META_BATCH_ID = 2
META_PROPOSED_AT = 3


def signature_hash(signature: str) -> str:
    """keccak256 of a canonical signature as 0x-prefixed hex."""
    return to_hex(keccak(text=signature))


def function_selector(signature: str) -> bytes:
    """First four bytes of a function signature hash."""
    return keccak(text=signature)[:4]


class EventKind(str, Enum):
    """Inbox events consumed by the indexer."""
    PROPOSED = "BatchProposed"
    PROVED = "BatchesProved"
    VERIFIED = "BatchesVerified"
    CONFLICTING = "ConflictingProof"


# All parameters of the inbox events are non-indexed
EVENT_PARAMS: Dict[EventKind, List[str]] = {
    EventKind.PROPOSED: [BATCH_INFO_TYPE, BATCH_META_TYPE, "bytes"],
    EventKind.PROVED: ["address", "uint64[]", f"{TRANSITION_TYPE}[]"],
    EventKind.VERIFIED: ["uint64", "bytes32"],
    EventKind.CONFLICTING: ["uint64", TRANSITION_STATE_TYPE, TRANSITION_TYPE],
}

EVENT_SIGNATURES: Dict[EventKind, str] = {
    kind: f"{kind.value}({','.join(params)})" for kind, params in EVENT_PARAMS.items()
}

EVENT_TOPICS: Dict[EventKind, str] = {
    kind: signature_hash(signature) for kind, signature in EVENT_SIGNATURES.items()
}

# Proposals first: replayed proofs and verifications may reference them
PROCESSING_ORDER = (
    EventKind.PROPOSED,
    EventKind.PROVED,
    EventKind.VERIFIED,
    EventKind.CONFLICTING,
)


@dataclass(frozen=True)
class Transition:
    """State transition asserted by a proof."""
    parent_hash: str
    block_hash: str
    state_root: str


@dataclass(frozen=True)
class BatchProposed:
    batch_id: int
    proposer: str
    proposed_at: int
    proposed_in: int
    info_hash: str


@dataclass(frozen=True)
class BatchesProved:
    verifier: str
    batch_ids: Tuple[int, ...]
    transitions: Tuple[Transition, ...]


@dataclass(frozen=True)
class BatchesVerified:
    batch_id: int
    block_hash: str


@dataclass(frozen=True)
class ConflictingProof:
    batch_id: int
    old_transition: Transition
    new_transition: Transition


@dataclass(frozen=True)
class DecodeError:
    """A log whose payload could not be decoded."""
    kind: EventKind
    reason: str
    log: RawLog


InboxEvent = Union[BatchProposed, BatchesProved, BatchesVerified, ConflictingProof]


def _transition(raw) -> Transition:
    return Transition(
        parent_hash=to_hex(raw[0]),
        block_hash=to_hex(raw[1]),
        state_root=to_hex(raw[2]),
    )


def _build(kind: EventKind, values) -> Union[InboxEvent, str]:
    """Map decoded ABI values onto the typed event, or return a failure reason."""
    if kind is EventKind.PROPOSED:
        info, meta, _tx_list = values
        return BatchProposed(
            batch_id=int(meta[META_BATCH_ID]),
            proposer=str(meta[META_PROPOSER]).lower(),
            proposed_at=int(meta[META_PROPOSED_AT]),
            proposed_in=int(info[INFO_PROPOSED_IN]),
            info_hash=to_hex(meta[0]),
        )

    if kind is EventKind.PROVED:
        verifier, batch_ids, transitions = values
        if len(batch_ids) != len(transitions):
            return f"{len(batch_ids)} batch ids but {len(transitions)} transitions"
        return BatchesProved(
            verifier=str(verifier).lower(),
            batch_ids=tuple(int(batch_id) for batch_id in batch_ids),
            transitions=tuple(_transition(raw) for raw in transitions),
        )

    if kind is EventKind.VERIFIED:
        batch_id, block_hash = values
        return BatchesVerified(batch_id=int(batch_id), block_hash=to_hex(block_hash))

    batch_id, old_tran, new_tran = values
    return ConflictingProof(
        batch_id=int(batch_id),
        old_transition=_transition(old_tran),
        new_transition=_transition(new_tran),
    )


def decode_event(kind: EventKind, log: RawLog) -> Union[InboxEvent, DecodeError]:
    """Decode a raw log as the given inbox event."""
    if not log.topics or log.topics[0] != EVENT_TOPICS[kind]:
        return DecodeError(kind, "topic does not match event signature", log)

    try:
        values = decode(EVENT_PARAMS[kind], log.data)
    except (DecodingError, ValueError, OverflowError) as e:
        return DecodeError(kind, f"invalid event data: {e}", log)

    result = _build(kind, values)
    if isinstance(result, str):
        return DecodeError(kind, result, log)
    return result
