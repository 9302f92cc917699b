"""
Private transfer orchestration: select inputs, build outputs, prove, settle,
then hand the recipient their note through the relay.

Selected notes are reserved in the NoteStore for the whole flow. Anything
that goes wrong before the settlement request is sent releases them. Once
the request is out, the rest of the flow runs in its own task so a caller
giving up cannot leave the notes reserved for a transfer that did land.
"""
from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple

from notewallet.api.config import WalletConfig
from notewallet.api.logging_config import get_logger
from notewallet.api.node_client import NodeClient
from notewallet.api.relay_client import RelayClient
from notewallet.api.schemas_api import InputNoteWire, NoteWire, ProvedTransferReq, TransferReq, TransferRes
from notewallet.crypto_core.fields import BN254_R, strip_hex, to_hex64
from notewallet.crypto_core.keys import DerivedKeyPair, address_from_public_key
from notewallet.crypto_core.proof_inputs import InputNoteData, ProverInput, UtxoKind
from notewallet.crypto_core.prover import ProverService
from notewallet.crypto_core.splits import select_notes_for_transfer
from notewallet.database.models import Note, NoteSelection, SpendableNote, StoredNote
from notewallet.database.note_store import NoteStore, Reservation
from notewallet.errors import ValidationError

logger = get_logger("clients.transfer")


class TransferStage(str, Enum):
    SELECTING_NOTES = "selecting_notes"
    BUILDING_TRANSACTION = "building_transaction"
    INITIALIZING_PROVER = "initializing_prover"
    GENERATING_PROOF = "generating_proof"
    SUBMITTING_TRANSACTION = "submitting_transaction"
    NOTIFYING_RECIPIENT = "notifying_recipient"
    COMPLETE = "complete"


_STAGE_ORDER = list(TransferStage)

ProgressCallback = Callable[[TransferStage], None]


class StageReporter:
    """Forwards stages to the callback, refusing to go backwards or repeat."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._last = -1
        self.history: List[TransferStage] = []

    def __call__(self, stage: TransferStage) -> None:
        idx = _STAGE_ORDER.index(stage)
        if idx <= self._last:
            raise ValueError(f"Stage {stage.value} reported after {_STAGE_ORDER[self._last].value}")
        self._last = idx
        self.history.append(stage)
        if self._callback:
            try:
                self._callback(stage)
            except Exception as e:
                logger.warning(f"Progress callback failed at {stage.value}: {e}")


# ---------- notes ----------
def to_spendable_note(stored: StoredNote, secret_key: str) -> SpendableNote:
    return SpendableNote(note=stored.note, secret_key=secret_key, value=stored.note.amount, tx_hash=stored.tx_hash)


def get_spendable_notes(stored: Iterable[StoredNote], secret_key: str, pending: Set[str]) -> List[SpendableNote]:
    """Pending, optimistic and zero-value notes are not spendable."""
    out = []
    for s in stored:
        if s.tx_hash in pending or s.is_optimistic:
            continue
        sn = to_spendable_note(s, secret_key)
        if sn.value > 0:
            out.append(sn)
    return out


def create_output_note(owner_pubkey: str, amount: int, contract: str) -> Note:
    # kind == contract: the circuit treats the token id as the note kind
    return Note(
        kind=contract,
        contract=contract,
        address=address_from_public_key(owner_pubkey),
        psi=to_hex64(secrets.randbelow(BN254_R)),
        value=to_hex64(amount),
    )


@dataclass(frozen=True)
class SendTransaction:
    recipient_pubkey: str
    amount: int
    input_notes: Tuple[InputNoteData, InputNoteData]
    output_notes: Tuple[Note, Note]

    def to_request(self) -> TransferReq:
        return TransferReq(
            recipient_pubkey=self.recipient_pubkey,
            amount=self.amount,
            input_notes=[InputNoteWire(**n.to_dict()) for n in self.input_notes],
            output_notes=[NoteWire(**n.to_dict()) for n in self.output_notes],
        )


def build_send_transaction(
    selection: NoteSelection,
    recipient_pubkey: str,
    amount: int,
    sender_pubkey: str,
) -> SendTransaction:
    if len(selection.selected_notes) != 2:
        raise ValidationError("Selection must hold exactly two input slots")
    if selection.total_input - selection.change_amount != amount:
        raise ValidationError("Selection does not balance against the amount")

    recipient = strip_hex(recipient_pubkey)
    contract = selection.selected_notes[0].note.contract
    recipient_note = create_output_note(recipient, amount, contract)
    change_note = (
        create_output_note(sender_pubkey, selection.change_amount, contract)
        if selection.change_amount > 0
        else Note.padding()
    )
    a, b = selection.selected_notes
    return SendTransaction(
        recipient_pubkey=recipient,
        amount=amount,
        input_notes=(InputNoteData.from_spendable(a), InputNoteData.from_spendable(b)),
        output_notes=(recipient_note, change_note),
    )


@dataclass
class TransferResult:
    tx_hash: str
    recipient_note: Note
    change_note: Optional[Note]
    recipient_notified: bool


# ---------- service ----------
class TransferService:
    def __init__(
        self,
        config: WalletConfig,
        store: NoteStore,
        prover: ProverService,
        node: NodeClient,
        relay: RelayClient,
    ):
        self.config = config
        self.store = store
        self.prover = prover
        self.node = node
        self.relay = relay
        self._settling: Set[asyncio.Future] = set()

    def spendable_notes(self, owner: str, keypair: DerivedKeyPair) -> List[SpendableNote]:
        return get_spendable_notes(self.store.list(owner), keypair.private_key, self.store.pending_hashes(owner))

    async def _prove(self, tx: SendTransaction, report: StageReporter) -> ProvedTransferReq:
        report(TransferStage.INITIALIZING_PROVER)
        await self.prover.initialize()
        # each uncached Poseidon2 hash is a bridge process
        blob = await asyncio.to_thread(
            self.prover.build_blob_data, tx.input_notes, self.config.contract_name, blob_index=1, blob_count=2
        )

        report(TransferStage.GENERATING_PROOF)
        proof = await self.prover.generate_proof(
            ProverInput(input_notes=tx.input_notes, output_notes=tx.output_notes, blob_data=blob, kind=UtxoKind.SEND)
        )
        return ProvedTransferReq(
            proof=proof.proof_b64,
            public_inputs=proof.public_inputs,
            blob_data=list(proof.blob_data),
            output_notes=[NoteWire(**n.to_dict()) for n in tx.output_notes],
        )

    async def execute_transfer(
        self,
        recipient_pubkey: str,
        amount: int,
        available: List[SpendableNote],
        keypair: DerivedKeyPair,
        owner: str,
        on_progress: Optional[ProgressCallback] = None,
        server_prove: bool = False,
    ) -> TransferResult:
        report = StageReporter(on_progress)
        report(TransferStage.SELECTING_NOTES)
        if len(strip_hex(recipient_pubkey)) != 64:
            raise ValidationError("Recipient public key must be a 64-character hex string")
        selection = select_notes_for_transfer(available, amount)

        spent = [n.tx_hash for n in selection.selected_notes if n.value > 0]
        reservation = self.store.mark_pending(owner, spent)

        try:
            report(TransferStage.BUILDING_TRANSACTION)
            tx = build_send_transaction(selection, recipient_pubkey, amount, keypair.public_key)
            request: Any = tx.to_request() if server_prove else await self._prove(tx, report)
        except BaseException:
            reservation.release()
            raise

        report(TransferStage.SUBMITTING_TRANSACTION)
        fut = asyncio.ensure_future(self._settle(tx, request, keypair, owner, spent, reservation, report))
        self._settling.add(fut)
        fut.add_done_callback(self._settled)
        return await asyncio.shield(fut)

    def _settled(self, fut: asyncio.Future) -> None:
        self._settling.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            logger.error(f"Transfer settlement failed: {fut.exception()}")

    @property
    def settling(self) -> int:
        return len(self._settling)

    async def wait_settled(self) -> None:
        """Wait for submitted transfers; failures are already logged by _settled."""
        if self._settling:
            await asyncio.gather(*list(self._settling), return_exceptions=True)

    async def _submit(self, request: Any) -> TransferRes:
        if isinstance(request, TransferReq):
            return await self.node.submit_transfer(request)
        return await self.node.submit_proved_transfer(request)

    async def _settle(
        self,
        tx: SendTransaction,
        request: Any,
        keypair: DerivedKeyPair,
        owner: str,
        spent: List[str],
        reservation: Reservation,
        report: StageReporter,
    ) -> TransferResult:
        try:
            res = await self._submit(request)
        except BaseException:
            reservation.release()
            raise

        recipient_note, change_note = tx.output_notes
        self.store.remove(owner, spent)
        if not change_note.is_padding:
            self.store.add(
                owner,
                StoredNote(note=change_note, tx_hash=res.tx_hash, stored_at=self.store.clock(), player=owner),
            )
        reservation.commit()
        logger.info(f"Transfer settled: tx={res.tx_hash} amount={tx.amount}")

        report(TransferStage.NOTIFYING_RECIPIENT)
        notified = True
        try:
            await self.relay.upload_note(
                tx.recipient_pubkey,
                {
                    "note": recipient_note.to_dict(),
                    "txHash": res.tx_hash,
                    "amount": tx.amount,
                    "from": keypair.public_key,
                    "timestamp": self.store.clock(),
                },
                sender=keypair,
            )
        except Exception as e:
            # the transfer already landed; the recipient can be re-sent the note out of band
            logger.warning(f"Failed to upload encrypted note for recipient: {e}")
            notified = False

        report(TransferStage.COMPLETE)
        return TransferResult(
            tx_hash=res.tx_hash,
            recipient_note=recipient_note,
            change_note=None if change_note.is_padding else change_note,
            recipient_notified=notified,
        )


__all__ = [
    "TransferStage",
    "StageReporter",
    "to_spendable_note",
    "get_spendable_notes",
    "create_output_note",
    "SendTransaction",
    "build_send_transaction",
    "TransferResult",
    "TransferService",
]
