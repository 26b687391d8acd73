"""Rollback and reconciliation of derived state.

Every run re-processes a trailing block range. Before its logs are replayed,
everything those blocks contributed is removed and the affected batches are
re-derived from what remains, so a reorged-out proof or verification leaves
no trace.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import structlog
from sqlalchemy import and_, delete, func, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rollup_indexer.models import Batch, BatchProof, BatchStatus, PROOF_FIELDS

logger = structlog.get_logger(__name__)


@dataclass
class RollbackResult:
    """What a rollback removed."""
    from_block: int
    to_block: int
    deleted_proofs: int = 0
    affected_batches: List[int] = field(default_factory=list)
    deleted_batches: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "from_block": self.from_block,
            "to_block": self.to_block,
            "deleted_proofs": self.deleted_proofs,
            "affected_batches": len(self.affected_batches),
            "deleted_batches": self.deleted_batches,
        }


def derive_status(batch: Batch) -> str:
    if batch.verified_at is not None:
        return BatchStatus.VERIFIED.value
    if batch.proof_tx_hash is not None:
        return BatchStatus.PROVEN.value
    return BatchStatus.PROPOSED.value


class ReorgHandler:
    """Removes the contribution of a block range from the batch tables."""

    def __init__(self, database):
        self.db = database

    async def rollback_range(self, from_block: int, to_block: int) -> RollbackResult:
        """Delete proofs and verifications observed in ``[from_block, to_block]``.

        Runs in a single transaction; affected batches are reconciled before
        it commits.
        """
        result = RollbackResult(from_block=from_block, to_block=to_block)
        proven_in_range = Batch.proven_block.between(from_block, to_block)
        verified_in_range = Batch.verified_block.between(from_block, to_block)

        async with self.db.session() as session:
            affected: Set[int] = set(
                (await session.execute(
                    select(BatchProof.batch_id).where(BatchProof.proven_block.between(from_block, to_block))
                )).scalars()
            )
            affected.update(
                (await session.execute(
                    select(Batch.batch_id).where(or_(proven_in_range, verified_in_range))
                )).scalars()
            )

            if not affected:
                return result

            deleted = await session.execute(
                delete(BatchProof)
                .where(BatchProof.proven_block.between(from_block, to_block))
                .execution_options(synchronize_session=False)
            )
            result.deleted_proofs = deleted.rowcount or 0

            cleared_proof = {name: None for name in PROOF_FIELDS}
            cleared_proof.update(proof_systems=[], proof_variants=[], status=BatchStatus.PROPOSED.value)
            stays_verified = and_(Batch.verified_block.isnot(None), not_(verified_in_range))
            await session.execute(
                update(Batch)
                .where(proven_in_range, not_(stays_verified))
                .values(**cleared_proof)
                .execution_options(synchronize_session=False)
            )
            # Verifications outside the range keep pinning their block hash
            pinned = {key: value for key, value in cleared_proof.items() if key != "transition_block_hash"}
            await session.execute(
                update(Batch)
                .where(proven_in_range, stays_verified)
                .values(**pinned)
                .execution_options(synchronize_session=False)
            )

            unverified_ids = (await session.execute(
                select(Batch.batch_id).where(verified_in_range)
            )).scalars().all()
            if unverified_ids:
                await session.execute(
                    update(Batch)
                    .where(Batch.batch_id.in_(unverified_ids))
                    .values(verified_at=None, verified_block=None, verified_tx_hash=None)
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    update(BatchProof)
                    .where(BatchProof.batch_id.in_(unverified_ids))
                    .values(is_verified=False)
                    .execution_options(synchronize_session=False)
                )

            for batch_id in sorted(affected):
                if not await self.reconcile_batch(session, batch_id):
                    result.deleted_batches.append(batch_id)

            result.affected_batches = sorted(affected)

        logger.info("Rolled back block range", **result.to_dict())
        return result

    async def reconcile_batch(self, session: AsyncSession, batch_id: int) -> bool:
        """Re-derive a batch's proof fields and status from its remaining proofs.

        Returns:
            False if the batch no longer has any evidence and was deleted
        """
        batch = await session.get(Batch, batch_id, populate_existing=True)
        if batch is None:
            return True

        proofs = (await session.execute(
            select(BatchProof)
            .where(BatchProof.batch_id == batch_id)
            .order_by(
                BatchProof.is_verified.desc(),
                BatchProof.proven_at.asc(),
                BatchProof.proven_block.asc(),
                BatchProof.id.asc(),
            )
        )).scalars().all()

        if batch.is_legacy and batch.verified_at is None and not proofs:
            await session.delete(batch)
            logger.debug("Deleted legacy batch placeholder", batch_id=batch_id)
            return False

        if batch.verified_at is not None:
            # Only a proof of the verified transition may back a verified batch
            verified_hash = batch.transition_block_hash
            proofs = [
                proof for proof in proofs
                if proof.is_verified or proof.transition_block_hash == verified_hash
            ]

        if proofs:
            batch.copy_proof(proofs[0])
        else:
            # A verification without a matching proof still pins the block hash
            verified_hash = batch.transition_block_hash if batch.verified_at is not None else None
            batch.clear_proof()
            batch.transition_block_hash = verified_hash

        batch.status = derive_status(batch)
        return True

    async def last_verified_batch_before(self, block_number: int) -> Optional[int]:
        """Highest batch id whose verification landed before ``block_number``."""
        async with self.db.session() as session:
            return (await session.execute(
                select(func.max(Batch.batch_id)).where(Batch.verified_block < block_number)
            )).scalar()
