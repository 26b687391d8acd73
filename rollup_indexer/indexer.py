"""Core indexer logic for deriving batch state from inbox events."""

import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select

from rollup_indexer.chain_client import RawLog
from rollup_indexer.config import settings
from rollup_indexer.events import (
    EVENT_TOPICS, PROCESSING_ORDER, BatchesProved, BatchesVerified, BatchProposed,
    ConflictingProof, DecodeError, EventKind, decode_event
)
from rollup_indexer.log_fetcher import AdaptiveLogFetcher
from rollup_indexer.models import (
    ZERO_ADDRESS, Batch, BatchProof, BatchStatus, RunStatus, from_timestamp
)
from rollup_indexer.proof_classifier import ProofClassifier, extract_proof_data
from rollup_indexer.reorg_handler import ReorgHandler

logger = structlog.get_logger(__name__)


@dataclass
class RunResult:
    """Outcome of one ingestion pass."""
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    processed: int = 0
    skipped: bool = False
    chunks: int = 0
    stopped_early: bool = False

    def to_dict(self) -> Dict:
        return {
            "from_block": self.from_block,
            "to_block": self.to_block,
            "processed": self.processed,
            "skipped": self.skipped,
            "chunks": self.chunks,
            "stopped_early": self.stopped_early,
        }


class BatchIndexer:
    """Ingests inbox logs into the batch tables, one locked pass at a time."""

    def __init__(self, database, client, classifier: ProofClassifier, config=None):
        self.db = database
        self.client = client
        self.classifier = classifier
        self.settings = config or settings
        self.reorg_handler = ReorgHandler(database)
        self.fetcher: Optional[AdaptiveLogFetcher] = None

        self._last_verified_batch_id: Optional[int] = None
        self._block_timestamps: Dict[int, int] = {}
        self._handlers = {
            EventKind.PROPOSED: self._handle_batch_proposed,
            EventKind.PROVED: self._handle_batches_proved,
            EventKind.VERIFIED: self._handle_batches_verified,
            EventKind.CONFLICTING: self._handle_conflicting_proof,
        }

    def _new_fetcher(self) -> AdaptiveLogFetcher:
        return AdaptiveLogFetcher(
            self.client,
            self.settings.inbox_address,
            range_limit=self.settings.indexer_log_range_limit,
        )

    async def run(self) -> RunResult:
        """Run one ingestion pass, unless another runner holds the lock.

        Raises:
            LockLostError: the lock expired or was taken over mid-run
            Any RPC or database error that aborted the pass
        """
        chain_id = self.settings.chain_id
        latest = await self.client.get_latest_block_number()
        safe_block = max(latest - self.settings.confirmations, 0)

        lock_id = str(uuid.uuid4())
        if not await self.db.acquire_lock(chain_id, lock_id, self.settings.indexer_lock_ttl_seconds):
            logger.info("Indexer lock is held by another run, skipping", chain_id=chain_id)
            return RunResult(skipped=True)

        logger.info("Acquired indexer lock", chain_id=chain_id, lock_id=lock_id, safe_block=safe_block)

        try:
            result = await self._run_locked(lock_id, safe_block)
        except Exception as e:
            logger.error("Indexer run failed", chain_id=chain_id, error=str(e), exc_info=True)
            message = (str(e) or e.__class__.__name__)[:self.settings.last_run_error_max_length]
            try:
                await self.db.release_lock(chain_id, lock_id, RunStatus.FAILED, message)
            except Exception as release_error:
                logger.error("Failed to release indexer lock", chain_id=chain_id, error=str(release_error))
            raise

        await self.db.release_lock(chain_id, lock_id, RunStatus.SUCCESS)
        logger.info("Indexer run complete", chain_id=chain_id, **result.to_dict())
        return result

    async def _run_locked(self, lock_id: str, safe_block: int) -> RunResult:
        chain_id = self.settings.chain_id
        started = time.monotonic()

        last_processed = await self.db.get_last_processed_block(chain_id)
        if last_processed is None:
            floor = self.settings.start_block if self.settings.start_block is not None else safe_block
            last_processed = floor
        else:
            floor = self.settings.start_block or 0
        from_block = max(last_processed - self.settings.reorg_buffer, floor)

        result = RunResult(from_block=from_block)
        if safe_block < from_block:
            logger.debug("Nothing to index", from_block=from_block, safe_block=safe_block)
            return result

        self.fetcher = self._new_fetcher()
        chunk_size = max(self.settings.indexer_chunk_size, 1)
        max_runtime = self.settings.indexer_max_runtime_seconds

        chunk_start = from_block
        while chunk_start <= safe_block:
            chunk_end = min(chunk_start + chunk_size - 1, safe_block)

            result.processed += await self.process_range(chunk_start, chunk_end)
            await self.db.checkpoint(chain_id, lock_id, chunk_end, self.settings.indexer_lock_ttl_seconds)
            result.to_block = chunk_end
            result.chunks += 1
            chunk_start = chunk_end + 1

            if max_runtime and chunk_start <= safe_block and time.monotonic() - started >= max_runtime:
                logger.warning(
                    "Run time budget exhausted, stopping at checkpoint",
                    checkpoint=chunk_end,
                    safe_block=safe_block,
                    max_runtime=max_runtime
                )
                result.stopped_early = True
                break

        return result

    async def process_range(self, from_block: int, to_block: int) -> int:
        """Roll back and replay every inbox event in ``[from_block, to_block]``.

        Returns:
            Number of logs fetched for the range
        """
        if self.fetcher is None:
            self.fetcher = self._new_fetcher()

        await self.reorg_handler.rollback_range(from_block, to_block)
        self._last_verified_batch_id = await self.reorg_handler.last_verified_batch_before(from_block)
        self._block_timestamps = {}

        logs_by_kind: Dict[EventKind, List[RawLog]] = {}
        for kind in PROCESSING_ORDER:
            logs = await self.fetcher.fetch(EVENT_TOPICS[kind], from_block, to_block)
            logs_by_kind[kind] = sorted(logs, key=lambda log: (log.block_number, log.log_index))

        total = 0
        for kind in PROCESSING_ORDER:
            for log in logs_by_kind[kind]:
                total += 1
                event = decode_event(kind, log)
                if isinstance(event, DecodeError):
                    logger.warning(
                        "Skipping malformed log",
                        event=kind.value,
                        reason=event.reason,
                        tx_hash=log.transaction_hash,
                        block_number=log.block_number,
                        log_index=log.log_index
                    )
                    continue
                await self._handlers[kind](event, log)

        logger.info(
            "Processed block range",
            from_block=from_block,
            to_block=to_block,
            logs={kind.value: len(logs) for kind, logs in logs_by_kind.items()}
        )
        return total

    async def _block_timestamp(self, block_number: int) -> int:
        if block_number not in self._block_timestamps:
            self._block_timestamps[block_number] = await self.client.get_block_timestamp(block_number)
        return self._block_timestamps[block_number]

    async def _handle_batch_proposed(self, event: BatchProposed, log: RawLog):
        block_timestamp = await self._block_timestamp(log.block_number)
        proposed_at = event.proposed_at
        if proposed_at > block_timestamp:
            logger.warning(
                "Proposal timestamp ahead of its block, using block timestamp",
                batch_id=event.batch_id,
                proposed_at=proposed_at,
                block_timestamp=block_timestamp
            )
            proposed_at = block_timestamp

        values = {
            "proposer": event.proposer,
            "proposed_at": from_timestamp(proposed_at),
            "proposed_block": log.block_number,
            "proposed_tx_hash": log.transaction_hash,
            "is_legacy": False,
        }

        async with self.db.session() as session:
            batch = await session.get(Batch, event.batch_id)
            if batch is None:
                session.add(Batch(
                    batch_id=event.batch_id,
                    status=BatchStatus.PROPOSED.value,
                    proof_systems=[],
                    proof_variants=[],
                    **values
                ))
            else:
                for key, value in values.items():
                    setattr(batch, key, value)

    async def _handle_batches_proved(self, event: BatchesProved, log: RawLog):
        proven_at = from_timestamp(await self._block_timestamp(log.block_number))
        tx_input = await self.client.get_transaction_input(log.transaction_hash)
        classification = await self.classifier.classify(event.verifier, extract_proof_data(tx_input))

        async with self.db.session() as session:
            for batch_id, transition in zip(event.batch_ids, event.transitions):
                proof_values = {
                    "verifier_address": event.verifier,
                    "proof_systems": list(classification.proof_systems),
                    "proof_variants": list(classification.variants),
                    "proof_tx_hash": log.transaction_hash,
                    "proven_at": proven_at,
                    "proven_block": log.block_number,
                    "transition_parent_hash": transition.parent_hash,
                    "transition_block_hash": transition.block_hash,
                    "transition_state_root": transition.state_root,
                }
                is_verified_proof = False

                batch = await session.get(Batch, batch_id)
                if batch is None:
                    session.add(Batch(
                        batch_id=batch_id,
                        proposer=ZERO_ADDRESS,
                        proposed_at=proven_at,
                        proposed_block=log.block_number,
                        status=BatchStatus.PROVEN.value,
                        **proof_values
                    ))
                elif batch.verified_at is not None:
                    # Verified batches only accept provenance for the transition that was verified
                    if batch.transition_block_hash == transition.block_hash:
                        is_verified_proof = True
                        if batch.proof_tx_hash is None or proven_at < batch.proven_at:
                            for key, value in proof_values.items():
                                setattr(batch, key, value)
                elif batch.proof_tx_hash is None or proven_at < batch.proven_at:
                    for key, value in proof_values.items():
                        setattr(batch, key, value)
                    batch.status = BatchStatus.PROVEN.value

                await session.flush()

                proofs = (await session.execute(
                    select(BatchProof).where(BatchProof.batch_id == batch_id)
                )).scalars().all()
                proof = next((p for p in proofs if p.proof_tx_hash == log.transaction_hash), None)

                if is_verified_proof and any(p.is_verified for p in proofs if p is not proof):
                    is_verified_proof = False

                if proof is None:
                    session.add(BatchProof(batch_id=batch_id, is_verified=is_verified_proof, **proof_values))
                else:
                    for key, value in proof_values.items():
                        setattr(proof, key, value)
                    proof.is_verified = proof.is_verified or is_verified_proof

        logger.debug(
            "Recorded proof",
            tx_hash=log.transaction_hash,
            batch_ids=list(event.batch_ids),
            proof_systems=classification.proof_systems
        )

    async def _handle_batches_verified(self, event: BatchesVerified, log: RawLog):
        previous = self._last_verified_batch_id
        last_verified = event.batch_id
        if previous is not None and last_verified <= previous:
            logger.debug("Ignoring stale verification", batch_id=last_verified, last_verified=previous)
            return

        verified_at = from_timestamp(await self._block_timestamp(log.block_number))
        first_id = previous + 1 if previous is not None else last_verified
        verified_values = {
            "verified_at": verified_at,
            "verified_block": log.block_number,
            "verified_tx_hash": log.transaction_hash,
            "status": BatchStatus.VERIFIED.value,
        }

        async with self.db.session() as session:
            existing = {
                batch.batch_id: batch
                for batch in (await session.execute(
                    select(Batch).where(Batch.batch_id.between(first_id, last_verified))
                )).scalars()
            }

            legacy = 0
            for batch_id in range(first_id, last_verified + 1):
                batch = existing.get(batch_id)
                if batch is None:
                    batch = Batch(
                        batch_id=batch_id,
                        proposer=ZERO_ADDRESS,
                        proposed_at=verified_at,
                        proposed_block=log.block_number,
                        proof_systems=[],
                        proof_variants=[],
                        is_legacy=True,
                        **verified_values
                    )
                    session.add(batch)
                    existing[batch_id] = batch
                    legacy += 1
                else:
                    for key, value in verified_values.items():
                        setattr(batch, key, value)

            await session.flush()

            target = existing[last_verified]
            proofs = (await session.execute(
                select(BatchProof)
                .where(BatchProof.batch_id == last_verified)
                .order_by(BatchProof.proven_at.asc(), BatchProof.id.asc())
            )).scalars().all()
            match = next((p for p in proofs if p.transition_block_hash == event.block_hash), None)

            for proof in proofs:
                proof.is_verified = proof is match

            if match is not None:
                target.copy_proof(match)
            else:
                target.transition_block_hash = event.block_hash

        if legacy:
            logger.info("Synthesized legacy batches", count=legacy, up_to=last_verified)

        self._last_verified_batch_id = last_verified
        logger.debug(
            "Recorded verification",
            from_batch=first_id,
            to_batch=last_verified,
            matched_proof=match.proof_tx_hash if match is not None else None
        )

    async def _handle_conflicting_proof(self, event: ConflictingProof, log: RawLog):
        async with self.db.session() as session:
            batch = await session.get(Batch, event.batch_id)
            if batch is None:
                seen_at = from_timestamp(await self._block_timestamp(log.block_number))
                session.add(Batch(
                    batch_id=event.batch_id,
                    proposer=ZERO_ADDRESS,
                    proposed_at=seen_at,
                    proposed_block=log.block_number,
                    status=BatchStatus.PROPOSED.value,
                    proof_systems=[],
                    proof_variants=[],
                    is_contested=True,
                ))
            else:
                batch.is_contested = True

        logger.warning(
            "Conflicting proof observed",
            batch_id=event.batch_id,
            old_block_hash=event.old_transition.block_hash,
            new_block_hash=event.new_transition.block_hash
        )
