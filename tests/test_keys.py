import json
import tempfile
from pathlib import Path
from unittest import TestCase

from xrpl.wallet import Wallet

from txrelay.keys import load_wallet, read_seed


class TestKeys(TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.dir = Path(self.tmp.name)
        self.wallet = Wallet.create()

    def test_plain_seed_file(self):
        p = self.dir / "seed.txt"
        p.write_text(self.wallet.seed + "\n")
        self.assertEqual(load_wallet(p).address, self.wallet.address)

    def test_json_seed_file(self):
        p = self.dir / "wallet.json"
        p.write_text(json.dumps({"address": self.wallet.address, "seed": self.wallet.seed}))
        self.assertEqual(read_seed(p), self.wallet.seed)

    def test_bad_files(self):
        empty = self.dir / "empty"
        empty.write_text("")
        no_seed = self.dir / "no_seed.json"
        no_seed.write_text('{"address": "rX"}')
        for p in (empty, no_seed):
            with self.subTest(p=p.name), self.assertRaises(ValueError):
                read_seed(p)

    def test_generates_when_no_path(self):
        w = load_wallet(None)
        self.assertTrue(w.address.startswith("r"))
        self.assertNotEqual(w.address, self.wallet.address)
