# crypto_core/splits.py
# Input selection for the 2-in/2-out transfer circuit.
from __future__ import annotations

from typing import List, Sequence

from notewallet.database.models import NoteSelection, SpendableNote
from notewallet.errors import InsufficientBalance, ValidationError

MAX_INPUTS = 2


def _same_contract(a: SpendableNote, b: SpendableNote) -> bool:
    return a.note.contract == b.note.contract


def select_notes_for_transfer(available: Sequence[SpendableNote], amount: int) -> NoteSelection:
    """
    Pick at most two inputs covering `amount`.

    Smallest single note that covers it wins; otherwise the first pair in
    ascending order, skipping pairs that mix contracts. Balances that need
    three or more notes are refused even when the total would be enough.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive integer")

    total = sum(n.value for n in available)
    if total < amount:
        raise InsufficientBalance(total, amount)

    cand: List[SpendableNote] = sorted(available, key=lambda n: n.value)

    for n in cand:
        if n.value >= amount:
            return NoteSelection(
                selected_notes=[n, SpendableNote.padding()],
                change_amount=n.value - amount,
                total_input=n.value,
            )

    mixed = False
    for i, a in enumerate(cand):
        for b in cand[i + 1:]:
            pair = a.value + b.value
            if pair < amount:
                continue
            if not _same_contract(a, b):
                mixed = True
                continue
            return NoteSelection(
                selected_notes=[a, b],
                change_amount=pair - amount,
                total_input=pair,
            )

    if mixed:
        raise ValidationError("Cannot combine notes from different contracts in one transfer")

    raise InsufficientBalance(
        total,
        amount,
        reason=f"at most {MAX_INPUTS} notes can be combined in a single transfer",
    )


__all__ = ["MAX_INPUTS", "select_notes_for_transfer"]
