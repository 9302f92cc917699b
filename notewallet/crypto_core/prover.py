# crypto_core/prover.py
# Proof generation behind a small backend seam.
#
# ProverService owns lifecycle (single-flight init) and input packing;
# the ProvingBackend does the heavy work. BbBridgeBackend shells out to
# scripts/bb_bridge.mjs (Noir witness + UltraHonk via bb.js) and doubles as
# the production Poseidon2 FieldHasher.

from __future__ import annotations

import asyncio
import base64
import json
import os
import pathlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import requests

from notewallet.api.config import WalletConfig
from notewallet.api.logging_config import get_logger
from notewallet.api.subprocess_retry import SubprocessRetryError, run_json_script_with_retry
from notewallet.crypto_core.fields import FieldHasher, parse_field, strip_hex, to_field_hex
from notewallet.crypto_core.proof_inputs import (
    BlobData,
    InputNoteData,
    ProverInput,
    build_blob_data,
    build_input_map,
)
from notewallet.errors import ExternalBackendError, NoteWalletError

logger = get_logger("crypto_core.prover")


class ProvingBackend(Protocol):
    async def load(self) -> None: ...

    async def prove(self, input_map: Dict[str, Any]) -> Tuple[bytes, List[str]]: ...


@dataclass(frozen=True)
class ProofResult:
    proof: bytes
    public_inputs: List[str]  # hex, no 0x
    blob_data: bytes

    @property
    def proof_b64(self) -> str:
        return base64.b64encode(self.proof).decode("ascii")


class ProverService:
    def __init__(self, backend: ProvingBackend, hasher: FieldHasher):
        self.backend = backend
        self.hasher = hasher
        self._ready = False
        self._init_task: Optional[asyncio.Task] = None

    def is_initialized(self) -> bool:
        return self._ready

    async def _do_initialize(self) -> None:
        logger.info("Loading proving backend")
        await self.backend.load()
        self._ready = True
        logger.info("Proving backend ready")

    async def initialize(self) -> None:
        """
        Concurrent callers share one in-flight load. A failed load is
        forgotten so the next call starts over.
        """
        if self._ready:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._do_initialize())
        task = self._init_task
        try:
            # a cancelled waiter must not cancel the shared load
            await asyncio.shield(task)
        except BaseException:
            if task.done() and (task.cancelled() or task.exception() is not None):
                if self._init_task is task:
                    self._init_task = None
            raise

    def build_blob_data(
        self,
        input_notes: Sequence[InputNoteData],
        contract_name: str,
        blob_index: int = 1,
        blob_count: int = 2,
    ) -> BlobData:
        return build_blob_data(input_notes, contract_name, self.hasher, blob_index, blob_count)

    async def generate_proof(self, inp: ProverInput) -> ProofResult:
        if not self._ready:
            await self.initialize()

        # packing errors are local and surface before any backend work
        input_map = await asyncio.to_thread(build_input_map, inp, self.hasher)
        try:
            proof, public_inputs = await self.backend.prove(input_map)
        except NoteWalletError:
            raise
        except Exception as e:
            raise ExternalBackendError(f"Proof generation failed: {e}") from e

        return ProofResult(
            proof=proof,
            public_inputs=[strip_hex(p) for p in public_inputs],
            blob_data=inp.blob_data.blob,
        )


# ===== Barretenberg bridge (node + bb.js) =====

def _bridge_error(op: str, e: SubprocessRetryError) -> ExternalBackendError:
    # timeouts and exhausted transient retries are worth another try later
    retryable = e.returncode is None
    return ExternalBackendError(f"Prover bridge '{op}' failed: {e}", retryable=retryable)


class BbBridgeBackend:
    """
    Runs `node scripts/bb_bridge.mjs` with one JSON request per call.

    Also implements FieldHasher: Poseidon2 results are memoized per input
    tuple since the same commitments are hashed again for the blob and the
    input map.
    """

    def __init__(
        self,
        config: WalletConfig,
        runner: Callable[..., Dict[str, Any]] = run_json_script_with_retry,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        self._runner = runner
        self._session = session or requests.Session()
        self._memo: Dict[Tuple[int, ...], int] = {}
        self.circuit_path: Optional[pathlib.Path] = None

    # ---------- process ----------
    def _call(self, payload: Dict[str, Any], timeout: float, description: str) -> Dict[str, Any]:
        cmd = [self.config.node_bin, str(self.config.bridge_script)]
        try:
            return self._runner(
                cmd=cmd,
                payload=payload,
                timeout=timeout,
                cwd=self.config.bridge_script.parent,
                env=dict(os.environ),
                description=description,
            )
        except SubprocessRetryError as e:
            raise _bridge_error(payload.get("op", "?"), e) from e

    # ---------- FieldHasher ----------
    def hash(self, fields: Sequence[int]) -> int:
        key = tuple(fields)
        hit = self._memo.get(key)
        if hit is not None:
            return hit
        out = self._call(
            {"op": "poseidon2", "inputs": [to_field_hex(f) for f in key]},
            timeout=self.config.http_timeout_sec,
            description="Poseidon2 hash",
        )
        try:
            h = parse_field(strip_hex(str(out["hash"])).rjust(64, "0"))
        except (KeyError, NoteWalletError) as e:
            raise ExternalBackendError(f"Prover bridge returned a bad hash: {out!r}") from e
        self._memo[key] = h
        return h

    # ---------- artifacts ----------
    def _circuit_file(self) -> pathlib.Path:
        return pathlib.Path(self.config.cache_dir) / f"{self.config.circuit_name}.json"

    def _download_circuit(self) -> pathlib.Path:
        path = self._circuit_file()
        if path.exists():
            return path

        url = self.config.circuit_url
        logger.info(f"Downloading circuit artifact from {url}")
        try:
            r = self._session.get(url, timeout=self.config.http_timeout_sec)
            r.raise_for_status()
            circuit = r.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise ExternalBackendError(
                f"Failed to load circuit: {status}", status=status, retryable=bool(status and status >= 500)
            ) from e
        except requests.RequestException as e:
            raise ExternalBackendError(f"Failed to load circuit: {e}", retryable=True) from e
        except ValueError as e:
            raise ExternalBackendError("Circuit artifact is not JSON") from e

        if not isinstance(circuit, dict) or "bytecode" not in circuit:
            raise ExternalBackendError("Circuit artifact has no bytecode")

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(circuit))
        tmp.replace(path)
        return path

    # ---------- ProvingBackend ----------
    async def load(self) -> None:
        self.circuit_path = await asyncio.to_thread(self._download_circuit)

    async def prove(self, input_map: Dict[str, Any]) -> Tuple[bytes, List[str]]:
        if self.circuit_path is None:
            await self.load()
        payload = {"op": "prove", "circuit": str(self.circuit_path), "inputs": input_map}
        out = await asyncio.to_thread(
            self._call, payload, self.config.prove_timeout_sec, "Proof generation"
        )
        try:
            proof = base64.b64decode(out["proof"], validate=True)
            public_inputs = [str(p) for p in out.get("publicInputs", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalBackendError("Prover bridge returned a malformed proof") from e
        return proof, public_inputs


__all__ = ["ProvingBackend", "ProofResult", "ProverService", "BbBridgeBackend"]
