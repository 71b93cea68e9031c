"""
par_keys.py
===========

Key tables for the encrypted ``chara.par`` / ``chara2.par`` archives.

Each table is a published 512-byte blob read as 64 little-endian 64-bit words.
The tables are not bundled; drop ``chara_key.bin`` and ``chara2_key.bin`` into
the keys directory (``PAR_CRYPT_KEYS_DIR`` or ``scripts/par_crypt/keys``).
"""

from __future__ import annotations

import itertools
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

import numpy as np

KEY_TABLE_SIZE = 512
KEY_WORD_SIZE = 8
KEY_WORD_COUNT = KEY_TABLE_SIZE // KEY_WORD_SIZE

PARC_MAGIC = b"PARC"
MAGIC_SIZE = 4

KEYS_DIR_ENV = "PAR_CRYPT_KEYS_DIR"
DEFAULT_KEYS_DIR = Path(
    os.environ.get(KEYS_DIR_ENV) or Path(__file__).resolve().parent / "keys"
)


class KeyTableError(Exception):
    pass


@dataclass(frozen=True)
class ParType:
    name: str
    key_file: str
    encrypted_magic: bytes
    description: str


PAR_TYPES: Dict[str, ParType] = {
    "chara": ParType(
        name="chara",
        key_file="chara_key.bin",
        encrypted_magic=b"\xAC\xC5\x8B\x99",
        description="chara.par",
    ),
    "chara2": ParType(
        name="chara2",
        key_file="chara2_key.bin",
        encrypted_magic=b"\x01\x6E\x58\xE4",
        description="chara2.par (Lost Judgment only)",
    ),
}


@dataclass(frozen=True)
class KeyTable:
    """Immutable key table; ``words`` and ``array`` are derived from ``data``."""

    name: str
    data: bytes = field(repr=False)
    words: Tuple[int, ...] = field(init=False, repr=False, compare=False)
    array: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        data = bytes(self.data)
        if len(data) != KEY_TABLE_SIZE:
            raise KeyTableError(
                f"key table {self.name!r} must be {KEY_TABLE_SIZE} bytes, got {len(data)}"
            )
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "words", struct.unpack(f"<{KEY_WORD_COUNT}Q", data))
        # frombuffer over bytes is read-only.
        object.__setattr__(self, "array", np.frombuffer(data, dtype="<u8"))

    def keystream(self) -> Iterator[int]:
        """Endless keystream cycling over the table words in order."""
        return itertools.cycle(self.words)


_KEY_TABLE_CACHE: Dict[Tuple[str, str], KeyTable] = {}


def key_path(par_type: ParType, keys_dir: Path) -> Path:
    return keys_dir / par_type.key_file


def load_key_table(par_type: ParType, keys_dir: Path = DEFAULT_KEYS_DIR) -> KeyTable:
    """Load (once per process) the key table for *par_type* from *keys_dir*."""
    cache_key = (str(Path(keys_dir).resolve()), par_type.name)
    cached = _KEY_TABLE_CACHE.get(cache_key)
    if cached is not None:
        return cached

    path = key_path(par_type, Path(keys_dir))
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise KeyTableError(
            f"cannot read {par_type.description} key table {path}: {exc}"
        ) from exc

    table = KeyTable(name=par_type.name, data=data)
    _KEY_TABLE_CACHE[cache_key] = table
    return table


def detect_par_type(magic: bytes) -> Optional[ParType]:
    """Return the archive type whose encrypted header starts with *magic*."""
    head = magic[:MAGIC_SIZE]
    for par_type in PAR_TYPES.values():
        if head == par_type.encrypted_magic:
            return par_type
    return None


def read_magic(path: Path) -> bytes:
    with path.open("rb") as handle:
        return handle.read(MAGIC_SIZE)
