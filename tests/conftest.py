"""
notewallet test fixtures
"""

import asyncio
import hashlib
from typing import Sequence

import httpx
import pytest

from notewallet.api.config import WalletConfig
from notewallet.api.relay_app import create_app
from notewallet.api.relay_client import RelayClient
from notewallet.crypto_core import keys
from notewallet.crypto_core.fields import BN254_R, ZERO_HEX, to_hex64
from notewallet.database.models import Note, SpendableNote, StoredNote
from notewallet.database.note_store import NoteStore
from notewallet.database.storage import MemoryStorage

CONTRACT = "00000000000000000000000000000000000000000000000000000000000000aa"


class FakeHasher:
    """Deterministic stand-in for Poseidon2: sha256 over 32-byte big-endian words, reduced mod r."""

    def __init__(self):
        self.calls = 0

    def hash(self, fields: Sequence[int]) -> int:
        self.calls += 1
        data = b"".join(int(f).to_bytes(32, "big") for f in fields)
        return int.from_bytes(hashlib.sha256(bytes([len(fields)]) + data).digest(), "big") % BN254_R


class FakeClock:
    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now = now_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeBackend:
    """ProvingBackend that records what it was asked to prove."""

    def __init__(self, load_delay: float = 0.0, fail_loads: int = 0):
        self.load_calls = 0
        self.load_delay = load_delay
        self.fail_loads = fail_loads
        self.proved = []

    async def load(self) -> None:
        self.load_calls += 1
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.fail_loads:
            self.fail_loads -= 1
            raise RuntimeError("circuit download failed")

    async def prove(self, input_map):
        self.proved.append(input_map)
        return b"\x01\x02\x03proof", ["0x" + "00" * 31 + "07", "0x" + "00" * 31 + "08"]


def make_note(value: int, owner_pubkey: str, psi: int = 1, contract: str = CONTRACT) -> Note:
    return Note(
        kind=contract,
        contract=contract,
        address=keys.address_from_public_key(owner_pubkey),
        psi=to_hex64(psi),
        value=to_hex64(value),
    )


def make_stored(value: int, tx_hash: str, owner: str, owner_pubkey: str, stored_at: int = 1000, **kw) -> StoredNote:
    return StoredNote(
        note=make_note(value, owner_pubkey, psi=len(tx_hash) + value),
        tx_hash=tx_hash,
        stored_at=stored_at,
        player=owner,
        **kw,
    )


def make_spendable(value: int, tx_hash: str, secret_key: str = ZERO_HEX, contract: str = CONTRACT) -> SpendableNote:
    note = Note(kind=contract, contract=contract, address=to_hex64(5), psi=to_hex64(value + 11), value=to_hex64(value))
    return SpendableNote(note=note, secret_key=secret_key, value=value, tx_hash=tx_hash)


@pytest.fixture
def async_runner():
    """Run a coroutine on a fresh event loop."""

    def run(coro):
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()

    return run


@pytest.fixture
def hasher() -> FakeHasher:
    return FakeHasher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store(storage, clock) -> NoteStore:
    return NoteStore(storage, clock=clock)


@pytest.fixture
def alice():
    return keys.derive("alice")


@pytest.fixture
def bob():
    return keys.derive("bob")


@pytest.fixture
def config(tmp_path) -> WalletConfig:
    return WalletConfig(
        server_url="http://node.test",
        relay_url="http://relay.test",
        db_path=tmp_path / "wallet.db",
        cache_dir=tmp_path / "cache",
        contract_name="hyli_utxo",
        http_timeout_sec=5,
    )


def mock_client(handler, base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


def relay_client(config, relay_store) -> RelayClient:
    """RelayClient wired to an in-process relay app."""
    transport = httpx.ASGITransport(app=create_app(relay_store))
    return RelayClient(config, client=httpx.AsyncClient(transport=transport, base_url=config.relay_url))
