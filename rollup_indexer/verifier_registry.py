"""Verifier address to proof system mapping."""

import asyncio
import json
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import structlog
from eth_abi import decode

from rollup_indexer.events import function_selector
from rollup_indexer.models import ZERO_ADDRESS

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("verifiers.json")


class ProofSystem(str, Enum):
    """Proof systems a verifier can belong to."""
    TEE = "TEE"
    SP1 = "SP1"
    RISC0 = "RISC0"


class ProofVariant(str, Enum):
    """TEE verifier flavours."""
    SGX_GETH = "SGX_GETH"
    TDX_GETH = "TDX_GETH"
    SGX_RETH = "SGX_RETH"


@dataclass(frozen=True)
class VerifierRole:
    system: ProofSystem
    variant: Optional[ProofVariant] = None


# Read-only accessors exposed by compose verifiers
COMPOSE_VERIFIER_GETTERS: Dict[str, VerifierRole] = {
    "sgxGethVerifier": VerifierRole(ProofSystem.TEE, ProofVariant.SGX_GETH),
    "tdxGethVerifier": VerifierRole(ProofSystem.TEE, ProofVariant.TDX_GETH),
    "sgxRethVerifier": VerifierRole(ProofSystem.TEE, ProofVariant.SGX_RETH),
    "risc0RethVerifier": VerifierRole(ProofSystem.RISC0),
    "sp1RethVerifier": VerifierRole(ProofSystem.SP1),
}

# Keys accepted in the verifier config file
CONFIG_ROLES: Dict[str, VerifierRole] = {
    "tee": VerifierRole(ProofSystem.TEE),
    "sp1": VerifierRole(ProofSystem.SP1),
    "risc0": VerifierRole(ProofSystem.RISC0),
    "sgx_geth": VerifierRole(ProofSystem.TEE, ProofVariant.SGX_GETH),
    "tdx_geth": VerifierRole(ProofSystem.TEE, ProofVariant.TDX_GETH),
    "sgx_reth": VerifierRole(ProofSystem.TEE, ProofVariant.SGX_RETH),
}


def normalize_address(address: str) -> str:
    return address.lower()


class VerifierRegistry:
    """Process-local registry of known verifier addresses.

    Seeded from a JSON file and extended at runtime by introspecting compose
    verifiers. Entries are only ever added; reads and inserts are guarded by a
    lock so the registry can be shared between tasks and threads.
    """

    def __init__(self, client=None):
        self.client = client
        self._lock = threading.Lock()
        self._mapping: Dict[str, Set[VerifierRole]] = {}
        self._introspected: Set[str] = set()

    @classmethod
    def from_config(cls, path: Optional[str] = None, client=None) -> "VerifierRegistry":
        """Create a registry seeded from the verifier config file."""
        registry = cls(client=client)
        registry.load_from_file(Path(path) if path else DEFAULT_CONFIG_PATH)
        return registry

    def load_from_file(self, path: Path):
        """Load a ``{"tee": [...], "sp1": [...], "risc0": [...]}`` mapping."""
        if not path.exists():
            logger.warning("Verifier config not found", path=str(path))
            return

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read verifier config", path=str(path), error=str(e))
            return

        self.load_mapping(data)
        logger.info("Loaded verifier config", path=str(path), addresses=len(self._mapping))

    def load_mapping(self, data: Dict[str, List[str]]):
        for key, addresses in data.items():
            role = CONFIG_ROLES.get(key.lower())
            if role is None:
                logger.warning("Unknown verifier config key", key=key)
                continue
            for address in addresses or []:
                self.register(address, role)

    def register(self, address: str, role: VerifierRole):
        if not address or normalize_address(address) == ZERO_ADDRESS:
            return
        with self._lock:
            self._mapping.setdefault(normalize_address(address), set()).add(role)

    def has_mapping_for(self, address: str) -> bool:
        with self._lock:
            return normalize_address(address) in self._mapping

    def _roles_for(self, addresses: Iterable[str]) -> Set[VerifierRole]:
        roles: Set[VerifierRole] = set()
        with self._lock:
            for address in addresses:
                roles.update(self._mapping.get(normalize_address(address), ()))
        return roles

    def get_systems_for(self, addresses: Iterable[str]) -> List[ProofSystem]:
        """Union of proof systems for the given addresses, in canonical order."""
        systems = {role.system for role in self._roles_for(addresses)}
        return [system for system in ProofSystem if system in systems]

    def get_variants_for(self, addresses: Iterable[str]) -> List[ProofVariant]:
        """Union of TEE variants for the given addresses, in canonical order."""
        variants = {role.variant for role in self._roles_for(addresses)}
        return [variant for variant in ProofVariant if variant in variants]

    async def hydrate_compose_verifier(self, verifier_address: str):
        """Register the sub-verifiers of a compose verifier.

        Each address is probed at most once per process; addresses that do not
        answer as compose verifiers are remembered as such.
        """
        normalized = normalize_address(verifier_address)
        with self._lock:
            if normalized in self._introspected:
                return
            self._introspected.add(normalized)

        if self.client is None:
            logger.debug("No chain client, skipping compose verifier introspection", verifier=normalized)
            return

        try:
            results = await asyncio.gather(*(
                self.client.call(normalized, function_selector(f"{getter}()"))
                for getter in COMPOSE_VERIFIER_GETTERS
            ))
            sub_verifiers = [decode(["address"], raw)[0] for raw in results]
        except Exception as e:
            logger.debug(
                "Verifier does not appear to be a compose verifier",
                verifier=normalized,
                error=str(e)
            )
            return

        for role, sub_verifier in zip(COMPOSE_VERIFIER_GETTERS.values(), sub_verifiers):
            self.register(sub_verifier, role)

        logger.info(
            "Registered compose verifier",
            verifier=normalized,
            sub_verifiers=[normalize_address(address) for address in sub_verifiers]
        )
