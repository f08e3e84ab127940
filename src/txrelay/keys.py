import json
import logging
from pathlib import Path

from xrpl.wallet import Wallet

log = logging.getLogger("txrelay.keys")


def read_seed(path: Path) -> str:
    """Seed from a keypair file: either the bare seed or JSON with a "seed" key."""
    text = Path(path).read_text().strip()
    if text.startswith("{"):
        data = json.loads(text)
        try:
            return data["seed"]
        except KeyError:
            raise ValueError(f"{path} has no 'seed' field") from None
    if not text:
        raise ValueError(f"{path} is empty")
    return text


def load_wallet(path: Path | None = None) -> Wallet:
    if path is None:
        log.info("No keypair provided, generating a new one")
        return Wallet.create()
    return Wallet.from_seed(read_seed(path))
