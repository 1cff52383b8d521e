import json
import os
import shutil
import tempfile
import unittest

from solders.keypair import Keypair

from deployer.config import DEFAULT_PROGRAM_ID, DeployerConfig, derive_ws_url, load_keypair
from deployer.errors import ConfigurationError


class DeployerConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = DeployerConfig.from_env({})
        self.assertEqual(config.rpc_url, "http://127.0.0.1:8899")
        self.assertEqual(config.ws_url, "ws://127.0.0.1:8900")
        self.assertEqual(config.program_id, DEFAULT_PROGRAM_ID)
        self.assertEqual(config.max_retries, 3)
        self.assertEqual(config.retry_delay_ms, 5000)
        self.assertEqual(config.poll_interval_ms, 30000)
        self.assertEqual(config.port, 3000)
        self.assertEqual(config.binary_source_path, os.path.join("./binaries", "incoming"))
        self.assertIsNone(config.admin_keypair_path)

    def test_overrides(self) -> None:
        config = DeployerConfig.from_env(
            {
                "RPC_URL": "https://api.devnet.solana.com",
                "MAX_RETRIES": "5",
                "RETRY_DELAY_MS": "250",
                "LOG_LEVEL": "debug",
                "API_KEY": "secret",
            }
        )
        self.assertEqual(config.ws_url, "wss://api.devnet.solana.com")
        self.assertEqual(config.max_retries, 5)
        self.assertEqual(config.retry_delay_ms, 250)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.api_key, "secret")
        self.assertNotIn("apiKey", config.redacted())

    def test_explicit_ws_url_wins(self) -> None:
        config = DeployerConfig.from_env({"WS_URL": "ws://elsewhere:9000"})
        self.assertEqual(config.ws_url, "ws://elsewhere:9000")

    def test_invalid_integer(self) -> None:
        with self.assertRaises(ConfigurationError):
            DeployerConfig.from_env({"PORT": "eighty"})

    def test_retries_must_be_positive(self) -> None:
        with self.assertRaises(ConfigurationError):
            DeployerConfig.from_env({"MAX_RETRIES": "0"})

    def test_invalid_program_id(self) -> None:
        with self.assertRaises(ConfigurationError):
            DeployerConfig.from_env({"PROGRAM_ID": "not-a-key"})

    def test_derive_ws_url_keeps_custom_port(self) -> None:
        self.assertEqual(derive_ws_url("http://localhost:1234"), "ws://localhost:1234")


class LoadKeypairTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="deployer-keys-")

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir)

    def test_loads_cli_keypair_file(self) -> None:
        keypair = Keypair()
        path = os.path.join(self.tmpdir, "deployer.json")
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(list(bytes(keypair)), handle)
        self.assertEqual(load_keypair(path).pubkey(), keypair.pubkey())

    def test_missing_file(self) -> None:
        with self.assertRaises(ConfigurationError):
            load_keypair(os.path.join(self.tmpdir, "missing.json"))

    def test_malformed_file(self) -> None:
        path = os.path.join(self.tmpdir, "broken.json")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write("[1, 2, 3")
        with self.assertRaises(ConfigurationError):
            load_keypair(path)


if __name__ == "__main__":
    unittest.main()
