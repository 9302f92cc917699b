"""
CLI tests (argparse entry point against a temp database)
"""

import asyncio

import httpx
import pytest

from notewallet.api.node_client import NodeClient
from notewallet.api.relay_store import RelayStore
from notewallet.clients import cli

from conftest import make_note, make_stored, mock_client, relay_client


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *a, **k: None)
    monkeypatch.delenv("NOTEWALLET_NAME", raising=False)


@pytest.fixture
def run(tmp_path):
    db = tmp_path / "wallet.db"

    def _run(*args):
        return cli.main(["--db", str(db), "--server", "http://node.test", *args])

    return _run


class TestParser:
    def test_commands(self):
        p = cli.build_parser()
        args = p.parse_args(["--name", "alice", "send", "ab" * 32, "5", "--server-prove"])
        assert args.func is cli.cmd_send
        assert args.amount == 5
        assert args.server_prove

    def test_name_required(self, run):
        with pytest.raises(SystemExit) as exc:
            run("keys")
        assert exc.value.code == 2

    def test_name_from_env(self, monkeypatch):
        monkeypatch.setenv("NOTEWALLET_NAME", "carol")
        assert cli.build_parser().parse_args(["keys"]).name == "carol"


class TestCommands:
    def test_keys(self, run, capsys, alice):
        assert run("--name", "alice", "keys") == 0
        out = capsys.readouterr().out
        assert alice.public_key in out
        assert alice.private_key not in out

    def test_keys_show_private(self, run, capsys, alice):
        run("--name", "alice", "keys", "--show-private")
        assert alice.private_key in capsys.readouterr().out

    def test_empty_balance(self, run, capsys):
        assert run("--name", "alice", "balance") == 0
        assert "Spendable" in capsys.readouterr().out

    def test_faucet_then_balance(self, run, capsys, monkeypatch, alice):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"tx_hash": "f1", "note": make_note(50, alice.public_key).to_dict()})

        monkeypatch.setattr(
            cli, "NodeClient", lambda cfg: NodeClient(cfg, client=mock_client(handler, cfg.server_url))
        )
        assert run("--name", "alice", "faucet", "--amount", "50") == 0
        assert seen[0].headers["X-Pubkey"] == alice.public_key
        capsys.readouterr()

        run("--name", "alice", "balance", "-v")
        out = capsys.readouterr().out
        assert "50 in 1 notes" in out

    def test_faucet_error(self, run, capsys, monkeypatch):
        def handler(request):
            return httpx.Response(503, json={"error": "faucet dry"})

        monkeypatch.setattr(
            cli, "NodeClient", lambda cfg: NodeClient(cfg, client=mock_client(handler, cfg.server_url))
        )
        assert run("--name", "alice", "faucet") == 1
        out = capsys.readouterr().out
        assert "faucet dry" in out
        assert "try again" in out

    def test_export_import(self, run, capsys, monkeypatch, tmp_path, alice):
        def handler(request):
            return httpx.Response(200, json={"tx_hash": "f1", "note": make_note(50, alice.public_key).to_dict()})

        monkeypatch.setattr(
            cli, "NodeClient", lambda cfg: NodeClient(cfg, client=mock_client(handler, cfg.server_url))
        )
        run("--name", "alice", "faucet")
        out_dir = tmp_path / "exports"
        assert run("--name", "alice", "export", "--out", str(out_dir)) == 0
        archive = out_dir / "notes-alice.zip"
        assert archive.exists()

        assert run("--name", "bob", "import", str(archive)) == 2
        assert "belongs to 'alice'" in capsys.readouterr().out
        assert run("--name", "bob", "import", str(archive), "--force") == 0
        assert "Imported 1 new notes" in capsys.readouterr().out

    def test_send_interrupted_after_submit_still_settles(self, async_runner, config, monkeypatch, alice, bob):
        tx = "ab" * 32
        submitted = []

        async def handler(request):
            submitted.append(request.url.path)
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={"tx_hash": tx})

        monkeypatch.setattr(
            cli, "NodeClient", lambda cfg: NodeClient(cfg, client=mock_client(handler, cfg.server_url))
        )
        monkeypatch.setattr(cli, "RelayClient", lambda cfg: relay_client(cfg, RelayStore()))
        s = cli.Session(config, "alice")
        s.store.add("alice", make_stored(20, "note0", "alice", alice.public_key))

        async def go():
            task = asyncio.ensure_future(cli._send(s, bob.public_key, 15, server_prove=True))
            while not submitted:
                await asyncio.sleep(0.001)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        try:
            async_runner(go())
            assert [n.tx_hash for n in s.store.list("alice")] == [tx]
            assert s.store.pending_hashes("alice") == set()
        finally:
            s.close()
