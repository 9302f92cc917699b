# api/node_client.py
# Async HTTP client for the settlement server.
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError as SchemaError

from notewallet.api.config import WalletConfig
from notewallet.api.logging_config import get_logger
from notewallet.api.schemas_api import FaucetReq, FaucetRes, ProvedTransferReq, TransferReq, TransferRes
from notewallet.crypto_core.fields import strip_hex
from notewallet.errors import ExternalBackendError, ValidationError

logger = get_logger("api.node_client")


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)[:200]


def raise_for_backend(resp: httpx.Response, what: str) -> None:
    """Map a non-2xx response to ExternalBackendError; 5xx and 429 are retryable."""
    if resp.is_success:
        return
    status = resp.status_code
    raise ExternalBackendError(
        f"{what} failed with status {status}: {_error_detail(resp)}",
        status=status,
        retryable=status >= 500 or status == 429,
    )


@asynccontextmanager
async def transport_errors(what: str) -> AsyncIterator[None]:
    try:
        yield
    except httpx.TransportError as e:
        raise ExternalBackendError(f"{what} failed: {e}", retryable=True) from e


def parse_json(resp: httpx.Response, model: type, what: str) -> Any:
    try:
        return model.model_validate(resp.json())
    except (ValueError, SchemaError) as e:
        raise ExternalBackendError(f"Unexpected {what} response") from e


class NodeClient:
    def __init__(self, config: WalletConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._own_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=config.server_url.rstrip("/"),
            timeout=config.http_timeout_sec,
            headers=config.extra_headers,
        )

    async def aclose(self) -> None:
        if self._own_client:
            await self.client.aclose()

    async def __aenter__(self) -> "NodeClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _post(self, path: str, body: BaseModel, what: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        async with transport_errors(what):
            resp = await self.client.post(path, json=body.model_dump(exclude_none=True), headers=headers)
        raise_for_backend(resp, what)
        return resp

    async def request_faucet(self, public_key_hex: str, amount: Optional[int] = None) -> FaucetRes:
        pk = strip_hex(public_key_hex)
        if not pk:
            raise ValidationError("Public key must not be empty")
        if len(pk) != 64:
            raise ValidationError("Public key must be a 32-byte hex string")
        try:
            req = FaucetReq(pubkey_hex=pk, amount=amount)
        except SchemaError as e:
            raise ValidationError(f"Invalid faucet request: {e.errors()[0]['msg']}") from e

        resp = await self._post("/api/faucet", req, "Faucet request", headers={"X-Pubkey": pk})
        res = parse_json(resp, FaucetRes, "faucet")
        logger.info(f"Faucet minted for {pk[:12]}… tx={res.tx_hash}")
        return res

    async def submit_proved_transfer(self, req: ProvedTransferReq) -> TransferRes:
        resp = await self._post("/api/transfer/prove", req, "Transfer")
        return parse_json(resp, TransferRes, "transfer")

    async def submit_transfer(self, req: TransferReq) -> TransferRes:
        """Server-side proving. Sends secret keys; only for trusted local nodes."""
        logger.warning("Submitting a server-proved transfer: input secret keys leave this process")
        resp = await self._post("/api/transfer", req, "Transfer")
        return parse_json(resp, TransferRes, "transfer")


__all__ = ["raise_for_backend", "transport_errors", "parse_json", "NodeClient"]
