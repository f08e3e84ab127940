import asyncio
import hashlib
import logging
from typing import Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models import SubmitOnly
from xrpl.models.requests import AccountInfo, Request, Tx
from xrpl.models.response import Response

import txrelay.constants as C
from txrelay.classifier import ENGINE_RESULT_PREFIXES, FATAL_RPC_ERRORS, RETRYABLE_RPC_ERRORS
from txrelay.errors import GatewayError, RejectionError, TransportError
from txrelay.models import TxStatus

log = logging.getLogger("txrelay.gateway")


class Gateway(Protocol):
    async def submit(self, payload: str) -> str: ...
    async def get_status(self, fingerprint: str) -> TxStatus: ...
    async def get_balance(self, address: str) -> int: ...


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def error_from_result(result: dict, *, context: str = "") -> GatewayError:
    """Turn an unsuccessful rippled response body into the matching GatewayError.

    Busy or unsynced nodes map to TransportError. Engine results and known bad
    requests map to RejectionError; other error names stay a plain GatewayError.
    """
    code = result.get("error") or result.get("engine_result")
    message = result.get("error_message") or result.get("error_exception") or result.get("engine_result_message") or str(code)
    if context:
        message = f"{context}: {message}"
    if code in RETRYABLE_RPC_ERRORS:
        return TransportError(message, code=code)
    if code in FATAL_RPC_ERRORS or (isinstance(code, str) and code.startswith(ENGINE_RESULT_PREFIXES)):
        return RejectionError(message, code=code)
    return GatewayError(message, code=code)


class XrplGateway:
    """Gateway over rippled JSON-RPC.

    The client is shared by every engine in a run; ``AsyncJsonRpcClient`` opens an
    httpx connection per request so concurrent calls are fine.
    """

    def __init__(self, client: AsyncJsonRpcClient, *, rpc_timeout: float = C.RPC_TIMEOUT):
        self.client = client
        self.rpc_timeout = rpc_timeout

    @classmethod
    def from_url(cls, url: str, *, rpc_timeout: float = C.RPC_TIMEOUT) -> "XrplGateway":
        return cls(AsyncJsonRpcClient(url), rpc_timeout=rpc_timeout)

    async def request(self, req: Request, *, t: float | None = None) -> Response:
        """Send ``req`` with a timeout, mapping network failures to TransportError."""
        timeout = self.rpc_timeout if t is None else t
        method = getattr(req, "method", req.__class__.__name__)
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=timeout)
        except TimeoutError as e:
            raise TransportError(f"{method} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {e.__class__.__name__} {e}") from e
        except OSError as e:
            raise TransportError(f"{method} connection error: {e}") from e

    async def submit(self, payload: str) -> str:
        resp = await self.request(SubmitOnly(tx_blob=payload))
        res = resp.result
        if not resp.is_successful():
            raise error_from_result(res, context="submit")

        er = res.get("engine_result")
        log.debug("submit engine_result=%s %s", er, res.get("engine_result_message"))
        if not isinstance(er, str):
            raise TransportError(f"submit returned no engine_result: {res}")

        if er in C.ACCEPTED_RESULTS or er.startswith("tec"):
            # tec* is provisional here; the validated result decides.
            srv_txid = res.get("tx_json", {}).get("hash")
            return srv_txid or txid_from_signed_blob_hex(payload)

        raise RejectionError(res.get("engine_result_message") or er, code=er)

    async def get_status(self, fingerprint: str) -> TxStatus:
        resp = await self.request(Tx(transaction=fingerprint))
        res = resp.result
        if not resp.is_successful():
            if res.get("error") == C.NOT_FOUND_ERROR:
                return TxStatus.pending()
            raise error_from_result(res, context="tx")

        if not res.get("validated"):
            return TxStatus.pending()

        li = res.get("ledger_index")
        li = int(li) if li is not None else None
        meta = res.get("meta") or res.get("meta_json") or {}
        result = meta.get("TransactionResult") if isinstance(meta, dict) else None
        if result == "tesSUCCESS":
            return TxStatus.confirmed(li)
        return TxStatus.failed(result or "unknown validated result", li)

    async def get_balance(self, address: str) -> int:
        resp = await self.request(AccountInfo(account=address, ledger_index="validated"))
        if not resp.is_successful():
            raise error_from_result(resp.result, context=f"account_info {address}")
        return int(resp.result["account_data"]["Balance"])
