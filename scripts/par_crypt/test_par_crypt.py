#!/usr/bin/env python3
import io
import json
import random
import tempfile
import unittest
from pathlib import Path
from unittest import mock
import sys


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import par_crypt as cli
from par_cipher import Mode, decrypt, encrypt
from par_keys import KEY_TABLE_SIZE, PAR_TYPES, KeyTable

CHARA_MAGIC = PAR_TYPES["chara"].encrypted_magic
CHARA2_MAGIC = PAR_TYPES["chara2"].encrypted_magic


def _key_bytes(seed: int) -> bytes:
    return bytes((i * 37 + seed) & 0xFF for i in range(KEY_TABLE_SIZE))


class ResolutionTests(unittest.TestCase):
    def test_mode_from_file_name(self) -> None:
        self.assertIs(cli.resolve_mode(Path("chara.par"), b""), Mode.DECRYPT)
        self.assertIs(cli.resolve_mode(Path("chara.decrypted.par"), b""), Mode.ENCRYPT)
        self.assertIs(cli.resolve_mode(Path("CHARA.PAR"), b""), Mode.DECRYPT)

    def test_mode_from_magic_when_name_is_ambiguous(self) -> None:
        self.assertIs(cli.resolve_mode(Path("dump.bin"), CHARA2_MAGIC), Mode.DECRYPT)
        self.assertIs(cli.resolve_mode(Path("dump.bin"), b"PARC"), Mode.ENCRYPT)

    def test_explicit_mode_wins(self) -> None:
        self.assertIs(cli.resolve_mode(Path("chara.par"), CHARA_MAGIC, "encrypt"), Mode.ENCRYPT)

    def test_undetermined_mode_raises(self) -> None:
        with self.assertRaises(cli.ParCryptError):
            cli.resolve_mode(Path("dump.bin"), b"\x00\x00\x00\x00")

    def test_par_type_from_magic(self) -> None:
        par_type = cli.resolve_par_type(Path("x.par"), CHARA2_MAGIC, Mode.DECRYPT)
        self.assertIs(par_type, PAR_TYPES["chara2"])

    def test_par_type_from_name_when_encrypting(self) -> None:
        self.assertIs(
            cli.resolve_par_type(Path("chara2.decrypted.par"), b"PARC", Mode.ENCRYPT),
            PAR_TYPES["chara2"],
        )
        self.assertIs(
            cli.resolve_par_type(Path("chara.decrypted.par"), b"PARC", Mode.ENCRYPT),
            PAR_TYPES["chara"],
        )

    def test_undetermined_par_type_raises(self) -> None:
        with self.assertRaises(cli.ParCryptError):
            cli.resolve_par_type(Path("chara.par"), b"PARC", Mode.DECRYPT)
        with self.assertRaises(cli.ParCryptError):
            cli.resolve_par_type(Path("motion.decrypted.par"), b"PARC", Mode.ENCRYPT)

    def test_default_output_path(self) -> None:
        self.assertEqual(
            cli.default_output_path(Path("/data/chara.par"), Mode.DECRYPT),
            Path("/data/chara.decrypted.par"),
        )
        self.assertEqual(
            cli.default_output_path(Path("/data/chara.decrypted.par"), Mode.ENCRYPT),
            Path("/data/chara.par"),
        )
        self.assertEqual(
            cli.default_output_path(Path("/data/dump.bin"), Mode.DECRYPT),
            Path("/data/dump.decrypted.par"),
        )
        self.assertEqual(
            cli.default_output_path(Path("/data/dump.bin"), Mode.ENCRYPT),
            Path("/data/dump.par"),
        )


class MainTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self._temp_dir.name)
        self.keys_dir = self.root / "keys"
        self.keys_dir.mkdir()
        (self.keys_dir / "chara_key.bin").write_bytes(_key_bytes(11))
        (self.keys_dir / "chara2_key.bin").write_bytes(_key_bytes(29))
        self.plain = b"PARC" + random.Random(3).randbytes(8 * 64 - 4)

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _main(self, *argv: str) -> int:
        return cli.main(["--keys-dir", str(self.keys_dir), "--workers", "1", *argv])

    def test_decrypt_detects_type_from_header(self) -> None:
        source = self.root / "dump.bin"
        source.write_bytes(CHARA2_MAGIC + bytes(12))

        self.assertEqual(self._main(str(source)), 0)

        expected = io.BytesIO()
        decrypt(io.BytesIO(source.read_bytes()), expected, KeyTable(name="chara2", data=_key_bytes(29)))
        self.assertEqual((self.root / "dump.decrypted.par").read_bytes(), expected.getvalue())

    def test_decrypt_then_encrypt_round_trip(self) -> None:
        source = self.root / "chara.par"
        source.write_bytes(b"\x00" * 16)
        self.assertEqual(self._main(str(source), "--par-type", "chara"), 0)

        decrypted = self.root / "chara.decrypted.par"
        self.assertTrue(decrypted.is_file())
        self.assertEqual(len(decrypted.read_bytes()), 16)

        source.unlink()
        self.assertEqual(self._main(str(decrypted), "--par-type", "chara"), 0)
        self.assertEqual(source.read_bytes(), b"\x00" * 16)

    def test_encrypt_plain_archive_by_name(self) -> None:
        plain_path = self.root / "chara2.decrypted.par"
        plain_path.write_bytes(self.plain)
        report = self.root / "reports" / "run.json"

        code = self._main(str(plain_path), "--report", str(report), "--hash")

        self.assertEqual(code, 0)
        output = self.root / "chara2.par"
        expected = io.BytesIO()
        encrypt(io.BytesIO(self.plain), expected, KeyTable(name="chara2", data=_key_bytes(29)))
        self.assertEqual(output.read_bytes(), expected.getvalue())

        payload = json.loads(report.read_text())
        self.assertEqual(payload["stats"]["files_encrypted"], 1)
        self.assertEqual(payload["stats"]["bytes_written"], len(self.plain))
        self.assertEqual(payload["files"][0]["par_type"], "chara2")
        self.assertEqual(len(payload["files"][0]["sha256"]), 64)

    def test_scalar_engine_matches_default(self) -> None:
        plain_path = self.root / "chara.decrypted.par"
        plain_path.write_bytes(self.plain + b"tail")
        batched = self.root / "batched.par"
        scalar = self.root / "scalar.par"

        self.assertEqual(self._main(str(plain_path), "--output", str(batched)), 0)
        self.assertEqual(self._main(str(plain_path), "--output", str(scalar), "--scalar"), 0)
        self.assertEqual(batched.read_bytes(), scalar.read_bytes())
        self.assertEqual(len(batched.read_bytes()) % 8, 0)

    def test_existing_output_is_skipped_without_overwrite(self) -> None:
        plain_path = self.root / "chara.decrypted.par"
        plain_path.write_bytes(self.plain)
        output = self.root / "chara.par"
        output.write_bytes(b"keep")

        self.assertEqual(self._main(str(plain_path)), 0)
        self.assertEqual(output.read_bytes(), b"keep")

        self.assertEqual(self._main(str(plain_path), "--overwrite"), 0)
        self.assertEqual(len(output.read_bytes()), len(self.plain))

    def test_dry_run_writes_nothing(self) -> None:
        plain_path = self.root / "chara.decrypted.par"
        plain_path.write_bytes(self.plain)
        report = self.root / "run.json"

        self.assertEqual(self._main(str(plain_path), "--dry-run", "--report", str(report)), 0)
        self.assertFalse((self.root / "chara.par").exists())
        self.assertFalse(report.exists())

    def test_missing_key_table_fails(self) -> None:
        (self.keys_dir / "chara_key.bin").unlink()
        plain_path = self.root / "chara.decrypted.par"
        plain_path.write_bytes(self.plain)
        report = self.root / "run.json"

        self.assertEqual(self._main(str(plain_path), "--report", str(report)), 1)
        payload = json.loads(report.read_text())
        self.assertEqual(payload["stats"]["files_failed"], 1)
        self.assertFalse((self.root / "chara.par").exists())

    def test_unresolvable_input_fails_but_others_continue(self) -> None:
        unknown = self.root / "dump.bin"
        unknown.write_bytes(b"\x00" * 8)
        plain_path = self.root / "chara.decrypted.par"
        plain_path.write_bytes(self.plain)

        self.assertEqual(self._main(str(unknown), str(plain_path)), 1)
        self.assertTrue((self.root / "chara.par").is_file())

    def test_inputs_sharing_an_output_are_not_both_written(self) -> None:
        first = self.root / "x.bin"
        second = self.root / "x.dat"
        first.write_bytes(bytes(range(16)))
        second.write_bytes(bytes(range(24)))
        report = self.root / "run.json"

        code = self._main(
            str(first),
            str(second),
            "--mode",
            "encrypt",
            "--par-type",
            "chara",
            "--overwrite",
            "--report",
            str(report),
        )

        self.assertEqual(code, 1)
        expected = io.BytesIO()
        encrypt(io.BytesIO(first.read_bytes()), expected, KeyTable(name="chara", data=_key_bytes(11)))
        self.assertEqual((self.root / "x.par").read_bytes(), expected.getvalue())

        payload = json.loads(report.read_text())
        self.assertEqual(payload["stats"]["files_encrypted"], 1)
        self.assertEqual(payload["stats"]["files_failed"], 1)
        self.assertEqual([entry["source"] for entry in payload["files"]], [str(first)])
        self.assertTrue(payload["failures"][0].startswith(str(second)))

    def test_output_that_is_another_input_is_rejected(self) -> None:
        encrypted = self.root / "chara.par"
        encrypted.write_bytes(CHARA_MAGIC + bytes(12))
        plain = self.root / "chara.decrypted.par"
        plain.write_bytes(self.plain)

        code = self._main(str(encrypted), str(plain), "--overwrite")

        self.assertEqual(code, 1)
        self.assertEqual(encrypted.read_bytes(), CHARA_MAGIC + bytes(12))
        self.assertEqual(plain.read_bytes(), self.plain)

    def test_failed_pass_removes_partial_output(self) -> None:
        plain_path = self.root / "chara.decrypted.par"
        plain_path.write_bytes(self.plain)
        report = self.root / "run.json"

        def broken_transform(source, sink, *args, **kwargs):
            sink.write(source.read(16))
            sink.flush()
            raise OSError("disk full")

        with mock.patch.object(cli, "transform_stream", side_effect=broken_transform):
            code = self._main(str(plain_path), "--report", str(report))

        self.assertEqual(code, 1)
        self.assertFalse((self.root / "chara.par").exists())
        payload = json.loads(report.read_text())
        self.assertEqual(payload["stats"]["files_failed"], 1)
        self.assertEqual(payload["stats"]["files_encrypted"], 0)
        self.assertEqual(len(payload["failures"]), 1)
        self.assertIn("disk full", payload["failures"][0])

    def test_output_option_requires_single_input(self) -> None:
        with self.assertRaises(SystemExit) as caught:
            self._main("a.par", "b.par", "--output", "out.par")
        self.assertEqual(caught.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
