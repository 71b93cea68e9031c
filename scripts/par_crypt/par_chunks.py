"""
par_chunks.py
=============

Chunking helpers shared by the PAR cipher engines.

* ``chunks_padded`` groups any iterable into fixed-width tuples and pads the
  last short group with a filler value instead of dropping it.
* ``iter_word_blocks`` does the same at buffer granularity for binary streams,
  so the batched engine can work on large slices without losing alignment.
"""

from __future__ import annotations

from typing import BinaryIO, Iterable, Iterator, Tuple, TypeVar

T = TypeVar("T")

WORD_SIZE = 8


def chunks_padded(iterable: Iterable[T], size: int, filler: T) -> Iterator[Tuple[T, ...]]:
    """Yield consecutive *size*-wide tuples from *iterable*.

    A trailing group shorter than *size* is right-padded with *filler* and
    emitted once. Nothing is synthesized for an empty source or for a source
    whose length is an exact multiple of *size*.
    """
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")

    pending = []
    for item in iterable:
        pending.append(item)
        if len(pending) == size:
            yield tuple(pending)
            pending = []

    if pending:
        pending.extend([filler] * (size - len(pending)))
        yield tuple(pending)


def iter_word_blocks(
    source: BinaryIO,
    block_size: int,
    width: int = WORD_SIZE,
    filler: int = 0,
) -> Iterator[bytes]:
    """Read *source* in blocks whose lengths are whole multiples of *width*.

    Short reads are carried over to the next block. When the stream ends in
    the middle of a word, the leftover bytes are padded with *filler* and
    flushed as one final block.
    """
    if width < 1:
        raise ValueError(f"word width must be positive, got {width}")
    if block_size < width or block_size % width:
        raise ValueError(
            f"block size must be a positive multiple of {width}, got {block_size}"
        )

    pending = bytearray()
    for data in iter(lambda: source.read(block_size), b""):
        pending += data
        usable = len(pending) - len(pending) % width
        if usable:
            yield bytes(pending[:usable])
            del pending[:usable]

    if pending:
        pending += bytes([filler]) * (width - len(pending))
        yield bytes(pending)
