"""
par_cipher.py
=============

Stream cipher used by the encrypted ``chara.par`` archives.

The stream is split into 8-byte little-endian words. Word ``i`` is combined
with keystream word ``i % 64`` and rotated by ``i % 64`` bits:

    decrypt: rotl(word ^ key[i], i % 64)
    encrypt: rotr(word, i % 64) ^ key[i]

A trailing partial word is zero-padded, so the output length is always rounded
up to a multiple of 8. Two engines are provided: a word-at-a-time pipeline and
a numpy-batched one. Both produce identical bytes for any buffer size.
"""

from __future__ import annotations

import enum
import itertools
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator

import numpy as np

from par_chunks import WORD_SIZE, chunks_padded, iter_word_blocks
from par_keys import KEY_WORD_COUNT, KeyTable

WORD_BITS = WORD_SIZE * 8
WORD_MASK = (1 << WORD_BITS) - 1
DEFAULT_BUFFER_SIZE = 8 * 1024 * 1024

_ONE = np.uint64(1)
_MAX_SHIFT = np.uint64(WORD_BITS - 1)


class Mode(str, enum.Enum):
    DECRYPT = "decrypt"
    ENCRYPT = "encrypt"


@dataclass
class TransformResult:
    mode: Mode
    words: int = 0

    @property
    def bytes_written(self) -> int:
        return self.words * WORD_SIZE


# ---------------------------------------------------------------------------
# Word-at-a-time engine
# ---------------------------------------------------------------------------

def rotate_left(value: int, amount: int) -> int:
    amount %= WORD_BITS
    if not amount:
        return value
    return ((value << amount) | (value >> (WORD_BITS - amount))) & WORD_MASK


def rotate_right(value: int, amount: int) -> int:
    amount %= WORD_BITS
    if not amount:
        return value
    return ((value >> amount) | (value << (WORD_BITS - amount))) & WORD_MASK


def decrypt_word(value: int, index: int, key_word: int) -> int:
    return rotate_left(value ^ key_word, index % WORD_BITS)


def encrypt_word(value: int, index: int, key_word: int) -> int:
    return rotate_right(value, index % WORD_BITS) ^ key_word


def transform_word(value: int, index: int, key_word: int, mode: Mode) -> int:
    if mode is Mode.DECRYPT:
        return decrypt_word(value, index, key_word)
    return encrypt_word(value, index, key_word)


def iter_transform(data: Iterable[int], key_table: KeyTable, mode: Mode) -> Iterator[bytes]:
    """Transform an iterable of byte values, yielding one 8-byte word at a time."""
    keystream = key_table.keystream()
    for index, chunk in enumerate(chunks_padded(data, WORD_SIZE, 0)):
        value = int.from_bytes(bytes(chunk), "little")
        result = transform_word(value, index, next(keystream), mode)
        yield result.to_bytes(WORD_SIZE, "little")


# ---------------------------------------------------------------------------
# Batched engine
# ---------------------------------------------------------------------------

def _rotl_array(values: np.ndarray, shifts: np.ndarray) -> np.ndarray:
    # Split the right shift so no lane is ever shifted by the full word width.
    return (values << shifts) | ((values >> (_MAX_SHIFT - shifts)) >> _ONE)


def _rotr_array(values: np.ndarray, shifts: np.ndarray) -> np.ndarray:
    return (values >> shifts) | ((values << (_MAX_SHIFT - shifts)) << _ONE)


def transform_block(block: bytes, start_index: int, key_table: KeyTable, mode: Mode) -> bytes:
    """Transform a word-aligned *block* whose first word is chunk *start_index*."""
    if len(block) % WORD_SIZE:
        raise ValueError(f"block length {len(block)} is not a multiple of {WORD_SIZE}")
    if not block:
        return b""

    words = np.frombuffer(block, dtype="<u8")
    positions = (np.arange(len(words), dtype=np.intp) + start_index % KEY_WORD_COUNT) % KEY_WORD_COUNT
    keys = key_table.array[positions]
    shifts = (positions % WORD_BITS).astype(np.uint64)

    if mode is Mode.DECRYPT:
        result = _rotl_array(words ^ keys, shifts)
    else:
        result = _rotr_array(words, shifts) ^ keys
    return result.astype("<u8", copy=False).tobytes()


# ---------------------------------------------------------------------------
# Stream wiring
# ---------------------------------------------------------------------------

def _iter_source_bytes(source: BinaryIO, buffer_size: int) -> Iterator[int]:
    return itertools.chain.from_iterable(iter(lambda: source.read(buffer_size), b""))


def transform_stream(
    source: BinaryIO,
    sink: BinaryIO,
    key_table: KeyTable,
    mode: Mode,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    scalar: bool = False,
) -> TransformResult:
    """Run one forward pass from *source* to *sink*.

    I/O errors from either side propagate unchanged; the sink is then left
    partially written.
    """
    if buffer_size < 1:
        raise ValueError(f"buffer size must be positive, got {buffer_size}")
    buffer_size = -(-buffer_size // WORD_SIZE) * WORD_SIZE
    result = TransformResult(mode=Mode(mode))

    if scalar:
        for word in iter_transform(_iter_source_bytes(source, buffer_size), key_table, result.mode):
            sink.write(word)
            result.words += 1
        return result

    for block in iter_word_blocks(source, buffer_size):
        sink.write(transform_block(block, result.words, key_table, result.mode))
        result.words += len(block) // WORD_SIZE
    return result


def decrypt(source: BinaryIO, sink: BinaryIO, key_table: KeyTable, **options) -> TransformResult:
    return transform_stream(source, sink, key_table, Mode.DECRYPT, **options)


def encrypt(source: BinaryIO, sink: BinaryIO, key_table: KeyTable, **options) -> TransformResult:
    return transform_stream(source, sink, key_table, Mode.ENCRYPT, **options)
