"""
Inbox poller tests against the in-process relay
"""

import asyncio

import httpx
import pytest

from notewallet.api.relay_client import RelayClient
from notewallet.api.relay_store import RelayStore
from notewallet.clients.inbox import InboxPoller, note_from_payload
from notewallet.crypto_core.messages import derive_recipient_tag
from notewallet.errors import ExternalBackendError

from conftest import make_note, mock_client, relay_client


class Clock:
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def relay_clock():
    return Clock()


@pytest.fixture
def relay_store(relay_clock):
    return RelayStore(clock=relay_clock)


@pytest.fixture
def relay(config, relay_store):
    return relay_client(config, relay_store)


def _payload(value, recipient_pubkey, tx="tx"):
    return {"note": make_note(value, recipient_pubkey).to_dict(), "txHash": tx, "amount": value}


def _send(async_runner, relay, recipient, *values, sender=None):
    async def go():
        for v in values:
            await relay.upload_note(recipient.public_key, _payload(v, recipient.public_key), sender=sender)

    async_runner(go())


class FlakyDelete(RelayClient):
    async def delete_note(self, keypair, note_id):
        raise ExternalBackendError("relay busy", status=503, retryable=True)


class TestNoteFromPayload:
    def test_nested(self):
        assert note_from_payload({"note": {"value": "05"}, "txHash": "x"}) == {"value": "05"}

    def test_bare(self):
        assert note_from_payload({"value": "05"}) == {"value": "05"}

    @pytest.mark.parametrize("data", [None, "note", [1, 2]])
    def test_not_a_dict(self, data):
        assert note_from_payload(data) is None


class TestPollOnce:
    """One inbox tick."""

    def test_ingests_and_deletes(self, async_runner, store, relay, relay_store, alice, bob):
        _send(async_runner, relay, alice, 5, 7, sender=bob)
        ids = [r["id"] for r in relay_store.list(derive_recipient_tag(alice.public_key))[0]]

        poller = InboxPoller(store, relay, alice, "alice")
        res = async_runner(poller.poll_once())

        assert (res.received, res.failed, res.deleted) == (2, 0, 2)
        assert relay_store.count() == 0
        notes = store.list("alice")
        assert {n.tx_hash for n in notes} == {f"encrypted:{i}" for i in ids}
        assert {n.note.amount for n in notes} == {5, 7}
        assert all(n.stored_at == 1000 * 1000 for n in notes)
        assert all(n.player == "alice" for n in notes)
        assert poller.received_count == 2

    def test_watermark_steps_back_one_second(self, async_runner, store, relay, relay_clock, alice):
        _send(async_runner, relay, alice, 5)
        relay_clock.now = 1010
        _send(async_runner, relay, alice, 6)

        res = async_runner(InboxPoller(store, relay, alice, "alice").poll_once())
        assert res.watermark == 1009
        assert store.get_last_fetch(alice.public_key) == 1009

    def test_watermark_never_moves_back(self, async_runner, store, relay, alice):
        store.set_last_fetch(alice.public_key, 500)
        _send(async_runner, relay, alice, 5)
        res = async_runner(InboxPoller(store, relay, alice, "alice").poll_once())
        assert res.watermark == 999

        # an empty tick keeps the watermark
        res = async_runner(InboxPoller(store, relay, alice, "alice").poll_once())
        assert res.received == 0
        assert store.get_last_fetch(alice.public_key) == 999

    def test_since_filters_old_notes(self, async_runner, store, relay, relay_store, alice):
        _send(async_runner, relay, alice, 5)
        store.set_last_fetch(alice.public_key, 1000)
        res = async_runner(InboxPoller(store, relay, alice, "alice").poll_once())
        assert res.received == 0
        assert relay_store.count() == 1

    def test_pages_through_backlog(self, async_runner, store, relay, relay_clock, alice):
        for second in (1000, 1001, 1002):
            relay_clock.now = second
            _send(async_runner, relay, alice, second - 990)

        poller = InboxPoller(store, relay, alice, "alice", page_limit=1)
        res = async_runner(poller.poll_once())
        assert res.received == 3
        assert {n.note.amount for n in store.list("alice")} == {10, 11, 12}
        assert res.watermark == 1001

    def test_undecryptable_counted(self, async_runner, store, relay, relay_store, alice, bob):
        tag = derive_recipient_tag(alice.public_key)
        relay_store.put(tag, "bm90IGEgYm94", bob.public_key)
        _send(async_runner, relay, alice, 5)

        res = async_runner(InboxPoller(store, relay, alice, "alice").poll_once())
        assert (res.received, res.failed, res.deleted) == (1, 1, 1)
        # the unreadable record stays on the relay
        assert relay_store.count() == 1
        assert res.watermark == 999

    def test_full_page_of_unreadable_does_not_block(self, async_runner, store, relay, relay_store, relay_clock, alice, bob):
        tag = derive_recipient_tag(alice.public_key)
        for _ in range(3):
            relay_store.put(tag, "bm90IGEgYm94", bob.public_key)
        relay_clock.now = 2000
        _send(async_runner, relay, alice, 5)

        poller = InboxPoller(store, relay, alice, "alice", page_limit=3)
        res = async_runner(poller.poll_once())
        assert (res.received, res.failed) == (1, 3)
        assert [n.note.amount for n in store.list("alice")] == [5]
        assert res.watermark == 1999

        # later ticks start past the junk
        relay_clock.now = 2100
        _send(async_runner, relay, alice, 6)
        res = async_runner(poller.poll_once())
        assert (res.received, res.failed) == (1, 0)

    def test_unexpected_payload_counted(self, async_runner, store, relay, relay_store, alice):
        async def go():
            await relay.upload_note(alice.public_key, ["not", "a", "note"])

        async_runner(go())
        res = async_runner(InboxPoller(store, relay, alice, "alice").poll_once())
        assert (res.received, res.failed) == (0, 1)
        assert store.list("alice") == []

    def test_idempotent_when_delete_fails(self, async_runner, config, store, relay_store, alice):
        relay = FlakyDelete(config, client=relay_client(config, relay_store).client)
        _send(async_runner, relay, alice, 5)
        poller = InboxPoller(store, relay, alice, "alice")

        res = async_runner(poller.poll_once())
        assert (res.received, res.deleted) == (1, 0)
        store.set_last_fetch(alice.public_key, 0)
        async_runner(poller.poll_once())
        assert len(store.list("alice")) == 1

    def test_fetch_failure_keeps_watermark(self, async_runner, config, store, alice):
        def down(request):
            return httpx.Response(503, json={"error": "maintenance"})

        store.set_last_fetch(alice.public_key, 500)
        poller = InboxPoller(store, RelayClient(config, client=mock_client(down, config.relay_url)), alice, "alice")
        with pytest.raises(ExternalBackendError) as exc:
            async_runner(poller.poll_once())
        assert exc.value.retryable
        assert poller.last_error is exc.value
        assert store.get_last_fetch(alice.public_key) == 500

    def test_on_notes_callback(self, async_runner, store, relay, alice):
        got = []
        _send(async_runner, relay, alice, 5)
        async_runner(InboxPoller(store, relay, alice, "alice", on_notes=got.extend).poll_once())
        assert len(got) == 1
        assert got[0].note_data["amount"] == 5


class TestScheduling:
    """Overlap guard and the polling loop."""

    def test_fetch_now_skips_when_busy(self, async_runner, store, relay, alice):
        poller = InboxPoller(store, relay, alice, "alice")

        async def go():
            async with poller._tick:
                assert poller.is_polling
                assert await poller.fetch_now() is None
            return await poller.fetch_now()

        res = async_runner(go())
        assert res is not None
        assert not poller.is_polling

    def test_run_until_stopped(self, async_runner, store, relay, alice):
        _send(async_runner, relay, alice, 5)
        poller = InboxPoller(store, relay, alice, "alice", interval_sec=0.01)

        async def go():
            task = asyncio.ensure_future(poller.run())
            while poller.received_count == 0:
                await asyncio.sleep(0.005)
            poller.stop()
            await asyncio.wait_for(task, timeout=1)

        async_runner(go())
        assert len(store.list("alice")) == 1

    def test_run_survives_errors(self, async_runner, config, store, alice):
        calls = []

        def down(request):
            calls.append(request)
            return httpx.Response(500)

        poller = InboxPoller(
            store, RelayClient(config, client=mock_client(down, config.relay_url)), alice, "alice", interval_sec=0.01
        )

        async def go():
            task = asyncio.ensure_future(poller.run())
            while len(calls) < 2:
                await asyncio.sleep(0.005)
            poller.stop()
            await asyncio.wait_for(task, timeout=1)

        async_runner(go())
        assert isinstance(poller.last_error, ExternalBackendError)
