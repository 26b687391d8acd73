"""Database models for the indexer."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# JSONB on PostgreSQL, plain JSON on other backends
JsonList = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER primary keys
SurrogateKey = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(seconds: int) -> datetime:
    """Naive UTC datetime for a unix timestamp."""
    return datetime.fromtimestamp(seconds, timezone.utc).replace(tzinfo=None)


class BatchStatus(str, Enum):
    """Lifecycle status of a batch."""
    PROPOSED = "proposed"
    PROVEN = "proven"
    VERIFIED = "verified"


class RunStatus(str, Enum):
    """Outcome of an indexer run recorded on the cursor row."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


# Batch columns describing the winning proof
PROOF_FIELDS = (
    "verifier_address",
    "proof_systems",
    "proof_variants",
    "proof_tx_hash",
    "proven_at",
    "proven_block",
    "transition_parent_hash",
    "transition_block_hash",
    "transition_state_root",
)


class Batch(Base):
    """Canonical per-batch state derived from inbox events."""

    __tablename__ = "batches"

    batch_id = Column(BigInteger, primary_key=True)
    proposer = Column(String(42), nullable=False)
    proposed_at = Column(DateTime, nullable=False)
    proposed_block = Column(BigInteger, nullable=False)
    proposed_tx_hash = Column(String(66))

    verifier_address = Column(String(42))
    proof_systems = Column(JsonList, nullable=False, default=list)
    proof_variants = Column(JsonList, nullable=False, default=list)
    proof_tx_hash = Column(String(66))
    proven_at = Column(DateTime)
    proven_block = Column(BigInteger)
    transition_parent_hash = Column(String(66))
    transition_block_hash = Column(String(66))
    transition_state_root = Column(String(66))

    verified_at = Column(DateTime)
    verified_block = Column(BigInteger)
    verified_tx_hash = Column(String(66))

    status = Column(String(16), nullable=False, default=BatchStatus.PROPOSED.value)
    is_contested = Column(Boolean, nullable=False, default=False)
    is_legacy = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_batches_proposed_at", "proposed_at"),
        Index("idx_batches_proven_at", "proven_at"),
        Index("idx_batches_verified_at", "verified_at"),
        Index("idx_batches_proven_block", "proven_block"),
        Index("idx_batches_verified_block", "verified_block"),
    )

    def clear_proof(self):
        """Reset every proof-derived column to its pre-proof default."""
        for field in PROOF_FIELDS:
            setattr(self, field, None)
        self.proof_systems = []
        self.proof_variants = []

    def copy_proof(self, proof: "BatchProof"):
        """Copy proof provenance and transition from a BatchProof row."""
        for field in PROOF_FIELDS:
            setattr(self, field, getattr(proof, field))
        self.proof_systems = list(proof.proof_systems or [])
        self.proof_variants = list(proof.proof_variants or [])


class BatchProof(Base):
    """One observed proof attempt for a batch."""

    __tablename__ = "batch_proofs"

    id = Column(SurrogateKey, primary_key=True, autoincrement=True)
    batch_id = Column(BigInteger, ForeignKey("batches.batch_id", ondelete="CASCADE"), nullable=False)
    verifier_address = Column(String(42), nullable=False)
    proof_systems = Column(JsonList, nullable=False, default=list)
    proof_variants = Column(JsonList, nullable=False, default=list)
    proof_tx_hash = Column(String(66), nullable=False)
    proven_at = Column(DateTime, nullable=False)
    proven_block = Column(BigInteger, nullable=False)
    transition_parent_hash = Column(String(66), nullable=False)
    transition_block_hash = Column(String(66), nullable=False)
    transition_state_root = Column(String(66), nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("batch_id", "proof_tx_hash", name="uq_batch_proof_tx"),
        Index("idx_batch_proofs_batch", "batch_id"),
        Index("idx_batch_proofs_proven_at", "proven_at"),
        Index("idx_batch_proofs_proven_block", "proven_block"),
    )


class IndexingState(Base):
    """Indexer cursor and run lock, one row per chain."""

    __tablename__ = "indexing_state"

    chain_id = Column(Integer, primary_key=True, autoincrement=False)
    last_processed_block = Column(BigInteger)
    lock_id = Column(String(36))
    lock_expires_at = Column(DateTime)
    last_run_started_at = Column(DateTime)
    last_run_finished_at = Column(DateTime)
    last_run_status = Column(String(16))
    last_run_error = Column(Text)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
