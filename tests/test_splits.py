"""
Input selection tests
"""

import pytest

from notewallet.crypto_core.splits import select_notes_for_transfer
from notewallet.errors import InsufficientBalance, ValidationError

from conftest import make_spendable


def _notes(*values):
    return [make_spendable(v, f"tx{i}") for i, v in enumerate(values)]


class TestSingleNote:
    """Tests for single-input selection."""

    def test_smallest_covering_note(self):
        sel = select_notes_for_transfer(_notes(10, 20, 5), 15)
        first, second = sel.selected_notes
        assert first.value == 20
        assert second.value == 0
        assert second.tx_hash == ""
        assert sel.change_amount == 5
        assert sel.total_input == 20

    def test_exact_match_has_no_change(self):
        sel = select_notes_for_transfer(_notes(7, 30), 7)
        assert sel.selected_notes[0].value == 7
        assert sel.change_amount == 0

    def test_always_two_slots(self):
        sel = select_notes_for_transfer(_notes(100), 1)
        assert len(sel.selected_notes) == 2


class TestPair:
    """Tests for two-input selection."""

    def test_first_ascending_pair(self):
        sel = select_notes_for_transfer(_notes(6, 3, 8), 10)
        assert [n.value for n in sel.selected_notes] == [3, 8]
        assert sel.change_amount == 1
        assert sel.total_input == 11

    def test_three_notes_needed(self):
        with pytest.raises(InsufficientBalance) as exc:
            select_notes_for_transfer(_notes(4, 4, 4), 10)
        assert exc.value.available == 12
        assert exc.value.required == 10
        assert "at most 2" in exc.value.message


class TestRejections:
    """Tests for refused requests."""

    def test_total_too_small(self):
        with pytest.raises(InsufficientBalance) as exc:
            select_notes_for_transfer(_notes(1, 2), 10)
        assert exc.value.message == "Insufficient balance. You have 3 but need 10"

    def test_empty(self):
        with pytest.raises(InsufficientBalance):
            select_notes_for_transfer([], 1)

    @pytest.mark.parametrize("amount", [0, -5, True])
    def test_bad_amount(self, amount):
        with pytest.raises(ValidationError):
            select_notes_for_transfer(_notes(10), amount)

    def test_mixed_contracts(self):
        notes = [make_spendable(4, "a"), make_spendable(8, "b", contract="00" * 31 + "bb")]
        with pytest.raises(ValidationError):
            select_notes_for_transfer(notes, 10)

    def test_mixed_pair_skipped_for_same_contract_pair(self):
        other = "00" * 31 + "bb"
        notes = [make_spendable(4, "a", contract=other), make_spendable(6, "b"), make_spendable(7, "c")]
        sel = select_notes_for_transfer(notes, 10)
        assert [n.tx_hash for n in sel.selected_notes] == ["b", "c"]
        assert sel.change_amount == 3
