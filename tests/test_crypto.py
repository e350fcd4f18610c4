from __future__ import annotations

import base64
import hashlib
import hmac
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import mpin_auth.keys as keys_module
from mpin_auth.crypto import CredentialHasher, TransportDecryptor, _oaep_padding, encrypt_for_transport
from mpin_auth.errors import DecryptionError
from mpin_auth.keys import KeyConfig, KeyCustodian, KeyCustodyError


class KeyCustodianTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.keys_dir = Path(self._temp_dir.name) / "keys"

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def test_generates_and_persists_key_pair_on_first_use(self) -> None:
        custodian = KeyCustodian(KeyConfig(keys_dir=self.keys_dir))
        custodian.load_or_generate()

        private_path = self.keys_dir / "private.pem"
        public_path = self.keys_dir / "public.pem"
        self.assertTrue(private_path.exists())
        self.assertTrue(public_path.exists())
        self.assertEqual(public_path.read_bytes(), custodian.public_key())
        self.assertTrue(custodian.public_key_pem().startswith("-----BEGIN PUBLIC KEY-----"))
        if os.name == "posix":
            self.assertEqual(private_path.stat().st_mode & 0o777, 0o600)

    def test_reloads_the_same_pair_after_restart(self) -> None:
        first = KeyCustodian(KeyConfig(keys_dir=self.keys_dir))
        first.load_or_generate()
        ciphertext = encrypt_for_transport(first.public_key(), "482913")

        restarted = KeyCustodian(KeyConfig(keys_dir=self.keys_dir))
        restarted.load_or_generate()

        self.assertEqual(restarted.public_key(), first.public_key())
        self.assertEqual(TransportDecryptor(restarted).decrypt(ciphertext), "482913")

    def test_private_key_is_only_lent_to_callbacks(self) -> None:
        custodian = KeyCustodian(KeyConfig(keys_dir=self.keys_dir))
        key_size = custodian.with_private_key(lambda private_key: private_key.key_size)

        self.assertEqual(key_size, 2048)
        self.assertFalse(hasattr(custodian, "private_key"))

    def test_incomplete_pair_is_fatal(self) -> None:
        self.keys_dir.mkdir(parents=True)
        (self.keys_dir / "public.pem").write_text("stale", encoding="utf-8")

        with self.assertRaises(KeyCustodyError):
            KeyCustodian(KeyConfig(keys_dir=self.keys_dir)).load_or_generate()

    def test_failed_persist_leaves_nothing_behind(self) -> None:
        real_write = keys_module._write_artifact
        calls = []

        def fail_on_public_key(path, data, mode):
            calls.append(path)
            if len(calls) == 2:
                raise OSError(28, "No space left on device")
            real_write(path, data, mode)

        with patch.object(keys_module, "_write_artifact", fail_on_public_key):
            with self.assertRaises(KeyCustodyError):
                KeyCustodian(KeyConfig(keys_dir=self.keys_dir)).load_or_generate()

        self.assertFalse((self.keys_dir / "private.pem").exists())
        self.assertFalse((self.keys_dir / "public.pem").exists())

        custodian = KeyCustodian(KeyConfig(keys_dir=self.keys_dir))
        custodian.load_or_generate()
        ciphertext = encrypt_for_transport(custodian.public_key(), "1234")
        self.assertEqual(TransportDecryptor(custodian).decrypt(ciphertext), "1234")

    def test_unreadable_pair_is_fatal(self) -> None:
        self.keys_dir.mkdir(parents=True)
        (self.keys_dir / "private.pem").write_text("not a key", encoding="utf-8")
        (self.keys_dir / "public.pem").write_text("not a key", encoding="utf-8")

        with self.assertRaises(KeyCustodyError):
            KeyCustodian(KeyConfig(keys_dir=self.keys_dir)).load_or_generate()

    def test_mismatched_halves_are_rejected(self) -> None:
        dir_a = self.keys_dir / "a"
        dir_b = self.keys_dir / "b"
        KeyCustodian(KeyConfig(keys_dir=dir_a)).load_or_generate()
        KeyCustodian(KeyConfig(keys_dir=dir_b)).load_or_generate()
        (dir_a / "public.pem").write_bytes((dir_b / "public.pem").read_bytes())

        with self.assertRaises(KeyCustodyError):
            KeyCustodian(KeyConfig(keys_dir=dir_a)).load_or_generate()

    def test_key_size_below_minimum_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            KeyConfig(keys_dir=self.keys_dir, key_size=1024)

    def test_config_from_env(self) -> None:
        with patch.dict(
            "os.environ",
            {
                "MPIN_KEYS_DIR": str(self.keys_dir),
                "MPIN_PRIVATE_KEY_FILENAME": "server.key",
                "MPIN_PUBLIC_KEY_FILENAME": "server.pub",
                "MPIN_RSA_KEY_SIZE": "3072",
            },
            clear=False,
        ):
            config = KeyConfig.from_env()

        self.assertEqual(config.private_key_path, self.keys_dir / "server.key")
        self.assertEqual(config.public_key_path, self.keys_dir / "server.pub")
        self.assertEqual(config.key_size, 3072)

    def test_config_from_env_rejects_non_numeric_key_size(self) -> None:
        with patch.dict("os.environ", {"MPIN_RSA_KEY_SIZE": "big"}, clear=False):
            with self.assertRaises(ValueError):
                KeyConfig.from_env()


class TransportDecryptorTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls._temp_dir = tempfile.TemporaryDirectory()
        cls.custodian = KeyCustodian(KeyConfig(keys_dir=Path(cls._temp_dir.name) / "primary"))
        cls.custodian.load_or_generate()
        cls.other_custodian = KeyCustodian(KeyConfig(keys_dir=Path(cls._temp_dir.name) / "other"))
        cls.other_custodian.load_or_generate()

    @classmethod
    def tearDownClass(cls) -> None:
        cls._temp_dir.cleanup()

    def setUp(self) -> None:
        self.decryptor = TransportDecryptor(self.custodian)

    def test_round_trip_for_valid_pins(self) -> None:
        for pin in ("0000", "1234", "000000", "987654"):
            ciphertext = encrypt_for_transport(self.custodian.public_key_pem(), pin)
            self.assertEqual(self.decryptor.decrypt(ciphertext), pin)

    def test_ciphertexts_are_randomized(self) -> None:
        first = encrypt_for_transport(self.custodian.public_key(), "1234")
        second = encrypt_for_transport(self.custodian.public_key(), "1234")
        self.assertNotEqual(first, second)

    def test_every_failure_mode_raises_the_same_generic_error(self) -> None:
        wrong_key_ciphertext = encrypt_for_transport(self.other_custodian.public_key(), "1234")
        truncated = base64.b64encode(base64.b64decode(wrong_key_ciphertext)[:100]).decode("ascii")
        invalid_inputs = [
            "%%% not base64 %%%",
            "",
            base64.b64encode(b"short").decode("ascii"),
            truncated,
            wrong_key_ciphertext,
            None,
        ]

        messages = set()
        for value in invalid_inputs:
            with self.assertRaises(DecryptionError) as context:
                self.decryptor.decrypt(value)  # type: ignore[arg-type]
            messages.add(str(context.exception))
            self.assertIsNone(context.exception.__cause__)

        self.assertEqual(messages, {"Invalid encrypted data."})

    def test_non_utf8_plaintext_is_rejected(self) -> None:
        public_key = self.custodian.with_private_key(lambda private_key: private_key.public_key())
        raw = public_key.encrypt(b"\xff\xfe\xfd", _oaep_padding())
        with self.assertRaises(DecryptionError):
            self.decryptor.decrypt(base64.b64encode(raw).decode("ascii"))


class CredentialHasherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.hasher = CredentialHasher()

    def test_salt_is_256_bits_hex_and_unique(self) -> None:
        salts = {self.hasher.new_salt() for _ in range(20)}
        self.assertEqual(len(salts), 20)
        for salt in salts:
            self.assertEqual(len(salt), 64)
            bytes.fromhex(salt)

    def test_hash_is_sha512_over_salt_then_pin(self) -> None:
        digest = self.hasher.hash("1234", "abcd")
        self.assertEqual(len(digest), 128)
        self.assertEqual(digest, hashlib.sha512(b"abcd1234").hexdigest())

    def test_verify_accepts_only_the_original_pin(self) -> None:
        salt = self.hasher.new_salt()
        for pin in ("1234", "0000", "123456", "000001"):
            digest = self.hasher.hash(pin, salt)
            self.assertTrue(self.hasher.verify(pin, digest, salt))
            for other in ("1235", "12345", "1234567", pin + "0", pin[:-1]):
                self.assertFalse(self.hasher.verify(other, digest, salt))

    def test_salt_changes_digest(self) -> None:
        self.assertNotEqual(
            self.hasher.hash("1234", self.hasher.new_salt()),
            self.hasher.hash("1234", self.hasher.new_salt()),
        )

    def test_verify_uses_constant_time_comparison(self) -> None:
        salt = self.hasher.new_salt()
        digest = self.hasher.hash("4321", salt)
        with patch("mpin_auth.crypto.hmac.compare_digest", wraps=hmac.compare_digest) as compare:
            self.assertFalse(self.hasher.verify("1234", digest, salt))
            self.assertTrue(self.hasher.verify("4321", digest, salt))

        self.assertEqual(compare.call_count, 2)

    def test_malformed_stored_digest_never_matches(self) -> None:
        salt = self.hasher.new_salt()
        self.assertFalse(self.hasher.verify("1234", "zz-not-hex", salt))
        self.assertFalse(self.hasher.verify("1234", "", salt))


if __name__ == "__main__":
    unittest.main()
