"""Proof system classification of BatchesProved events."""

from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from eth_abi import decode
from eth_abi.exceptions import DecodingError

from rollup_indexer.events import function_selector
from rollup_indexer.verifier_registry import VerifierRegistry, normalize_address

logger = structlog.get_logger(__name__)

PROVE_BATCHES_SIGNATURE = "proveBatches(bytes,bytes)"
PROVE_BATCHES_SELECTOR = function_selector(PROVE_BATCHES_SIGNATURE)

SUB_PROOFS_TYPE = "(address,bytes)[]"


@dataclass
class Classification:
    """Proof systems and TEE variants backing one proof."""
    proof_systems: List[str] = field(default_factory=list)
    variants: List[str] = field(default_factory=list)


def extract_proof_data(tx_input: bytes) -> Optional[bytes]:
    """Return the ``_proof`` argument of a proveBatches call, or None."""
    if len(tx_input) < 4 or tx_input[:4] != PROVE_BATCHES_SELECTOR:
        logger.warning("Transaction is not a proveBatches call", selector=tx_input[:4].hex())
        return None

    try:
        _params, proof = decode(["bytes", "bytes"], tx_input[4:])
    except (DecodingError, ValueError, OverflowError) as e:
        logger.warning("Failed to decode proveBatches calldata", error=str(e))
        return None

    return proof


def decode_sub_verifiers(proof_data: bytes) -> List[str]:
    """Sub-verifier addresses of a compose proof, or an empty list."""
    if not proof_data:
        return []
    try:
        (sub_proofs,) = decode([SUB_PROOFS_TYPE], proof_data)
    except (DecodingError, ValueError, OverflowError):
        return []
    return [normalize_address(verifier) for verifier, _proof in sub_proofs]


class ProofClassifier:
    """Resolve which proof systems produced a proof."""

    def __init__(self, registry: VerifierRegistry):
        self.registry = registry

    async def classify(self, verifier: str, proof_data: Optional[bytes]) -> Classification:
        """Classify a proof submitted through ``verifier``.

        Compose proofs are classified by the sub-verifiers they carry, plain
        proofs by the verifier itself.
        """
        verifier = normalize_address(verifier)
        if not self.registry.has_mapping_for(verifier):
            await self.registry.hydrate_compose_verifier(verifier)

        sub_verifiers = decode_sub_verifiers(proof_data or b"")
        addresses = sub_verifiers or [verifier]

        systems = self.registry.get_systems_for(addresses)
        variants = self.registry.get_variants_for(addresses)

        if not systems:
            logger.warning(
                "Could not classify proof",
                verifier=verifier,
                sub_verifiers=sub_verifiers
            )

        return Classification(
            proof_systems=[system.value for system in systems],
            variants=[variant.value for variant in variants],
        )
