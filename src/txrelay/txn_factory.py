"""Build and sign the sample XRP payments the CLI pushes through the engine.

The engine only ever sees the signed blob; everything ledger-specific lives here.
"""
import asyncio
import logging
from dataclasses import dataclass
from functools import partial

from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models.requests import AccountInfo, Fee, ServerState
from xrpl.models.transactions import Payment
from xrpl.wallet import Wallet

import txrelay.constants as C
from txrelay.gateway import XrplGateway, error_from_result, txid_from_signed_blob_hex
from txrelay.models import TransactionJob

log = logging.getLogger("txrelay.txn_factory")

MAX_FEE_DROPS = 1000  # Refuse to sign when escalated fees would drain the wallet


@dataclass(slots=True)
class SignedTxn:
    tx_hash: str
    blob: str
    sequence: int
    last_ledger_seq: int


class PaymentFactory:
    def __init__(self, gateway: XrplGateway, wallet: Wallet, *, amount_drops: int, horizon: int = C.HORIZON):
        self.gateway = gateway
        self.wallet = wallet
        self.amount_drops = amount_drops
        self.horizon = horizon
        self._next_seq: int | None = None
        self._seq_lock = asyncio.Lock()

    async def _result(self, req) -> dict:
        resp = await self.gateway.request(req)
        if not resp.is_successful():
            raise error_from_result(resp.result, context=str(req.method))
        return resp.result

    async def validated_ledger(self) -> int:
        ss = await self._result(ServerState())
        return ss["state"]["validated_ledger"]["seq"]

    async def fee(self) -> int:
        drops = (await self._result(Fee()))["drops"]
        fee = int(drops["minimum_fee"])
        if fee > int(drops["base_fee"]):
            log.warning("Queue fees escalated: minimum=%s open_ledger=%s base=%s",
                        fee, drops["open_ledger_fee"], drops["base_fee"])
        if fee > MAX_FEE_DROPS:
            raise ValueError(f"Fee too high ({fee} drops > {MAX_FEE_DROPS} max), refusing to sign")
        return fee

    async def alloc_seq(self) -> int:
        async with self._seq_lock:
            if self._next_seq is None:
                ai = await self._result(AccountInfo(account=self.wallet.address, ledger_index="current", strict=True))
                self._next_seq = ai["account_data"]["Sequence"]
            s = self._next_seq
            self._next_seq += 1
            return s

    async def sign_payment(self, destination: str, sequence: int) -> SignedTxn:
        """Sign a payment with a fresh LastLedgerSequence.

        Re-signing keeps ``sequence``, so only one version of a payment can ever land.
        """
        lls = await self.validated_ledger() + self.horizon
        tx = Payment(
            account=self.wallet.address,
            destination=destination,
            amount=str(self.amount_drops),
        ).to_xrpl()
        if tx.get("Flags") == 0:
            del tx["Flags"]
        tx["Sequence"] = sequence
        tx["Fee"] = str(await self.fee())
        tx["SigningPubKey"] = self.wallet.public_key
        tx["LastLedgerSequence"] = lls

        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, self.wallet.private_key)
        blob = encode(tx)
        return SignedTxn(tx_hash=txid_from_signed_blob_hex(blob), blob=blob, sequence=sequence, last_ledger_seq=lls)

    async def _resign(self, destination: str, sequence: int) -> str:
        signed = await self.sign_payment(destination, sequence)
        log.debug("Re-signed seq=%s lls=%s as %s", sequence, signed.last_ledger_seq, signed.tx_hash)
        return signed.blob

    async def build_jobs(self, n: int, *, max_retries: int, confirmation_timeout: float) -> list[TransactionJob]:
        """N tiny payments from the wallet to freshly generated destinations."""
        jobs = []
        for i in range(n):
            destination = Wallet.create().address
            seq = await self.alloc_seq()
            signed = await self.sign_payment(destination, seq)
            jobs.append(
                TransactionJob(
                    payload=signed.blob,
                    max_retries=max_retries,
                    confirmation_timeout=confirmation_timeout,
                    label=f"payment-{i + 1}",
                    resign=partial(self._resign, destination, seq),
                )
            )
            log.debug("Built payment-%s seq=%s -> %s (%s)", i + 1, seq, destination, signed.tx_hash)
        return jobs
