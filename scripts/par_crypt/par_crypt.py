#!/usr/bin/env python3
"""
par_crypt.py
============

Decrypt and re-encrypt the ``chara.par`` / ``chara2.par`` archives shipped by
Yakuza and Judgment titles.

* Mode (decrypt/encrypt) is inferred from the file name (``*.par`` vs
  ``*.decrypted.par``) and, failing that, from the first four bytes.
* Archive type (chara/chara2) is inferred from the encrypted header magic, or
  from the file name when encrypting a plain PARC archive.
* Outputs are padded to a whole number of 8-byte words; padding is never
  stripped.

Example usage:

    python par_crypt.py chara.par
    python par_crypt.py chara.decrypted.par --overwrite
    python par_crypt.py data/*.par \\
        --keys-dir ~/par-keys \\
        --workers 4 \\
        --report reports/par_crypt.json --hash

Key tables are read from ``--keys-dir`` (default: ``$PAR_CRYPT_KEYS_DIR`` or
the ``keys/`` directory next to this script).
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import sys
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, fields as dataclass_fields
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from par_cipher import DEFAULT_BUFFER_SIZE, Mode, transform_stream
from par_keys import (
    DEFAULT_KEYS_DIR,
    PAR_TYPES,
    PARC_MAGIC,
    KeyTableError,
    ParType,
    detect_par_type,
    load_key_table,
    read_magic,
)

PAR_SUFFIX = ".par"
DECRYPTED_SUFFIX = ".decrypted.par"
AUTO = "auto"


class ParCryptError(Exception):
    pass


@dataclass
class CryptStats:
    files_decrypted: int = 0
    files_encrypted: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    bytes_read: int = 0
    bytes_written: int = 0
    failures: List[str] = field(default_factory=list)


def merge_stats(target: CryptStats, source: CryptStats) -> None:
    """Merge *source* into *target* by summing int fields and extending list fields."""
    for f in dataclass_fields(CryptStats):
        src_val = getattr(source, f.name)
        if isinstance(src_val, int):
            setattr(target, f.name, getattr(target, f.name) + src_val)
        elif isinstance(src_val, list):
            getattr(target, f.name).extend(src_val)


@dataclass(frozen=True)
class CryptJob:
    source: Path
    target: Path
    mode: Mode
    par_type: ParType


def parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Decrypt or encrypt chara.par / chara2.par archives."
    )
    parser.add_argument(
        "inputs",
        type=Path,
        nargs="+",
        metavar="INPUT",
        help="Archive file(s) to process.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help=(
            "Output path. Only valid with a single input. Defaults to the input "
            "with '.decrypted.par' (decrypt) or '.par' (encrypt) as the extension."
        ),
    )
    parser.add_argument(
        "--mode",
        default=AUTO,
        choices=[AUTO] + [mode.value for mode in Mode],
        help="Operation mode; 'auto' picks it from the file name or header (default: %(default)s).",
    )
    parser.add_argument(
        "--par-type",
        default=AUTO,
        choices=[AUTO] + sorted(PAR_TYPES),
        help="Archive type; 'auto' picks it from the header or file name (default: %(default)s).",
    )
    parser.add_argument(
        "--keys-dir",
        type=Path,
        default=DEFAULT_KEYS_DIR,
        help="Directory holding chara_key.bin / chara2_key.bin (default: %(default)s).",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files instead of skipping them.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned operations without modifying the filesystem.",
    )
    parser.add_argument(
        "--scalar",
        action="store_true",
        help="Use the word-at-a-time engine instead of the numpy-batched one (slow).",
    )
    parser.add_argument(
        "--buffer-size",
        type=int,
        default=DEFAULT_BUFFER_SIZE,
        help="Read buffer size in bytes, rounded up to whole words (default: %(default)s).",
    )
    parser.add_argument(
        "--report",
        type=Path,
        help="Optional path to store a JSON summary of the run.",
    )
    parser.add_argument(
        "--hash",
        action="store_true",
        help="Include SHA256 hashes of written files in the JSON report.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=os.cpu_count() or 4,
        help="Number of parallel worker processes (default: number of CPUs).",
    )
    args = parser.parse_args(argv)
    if args.output is not None and len(args.inputs) > 1:
        parser.error("--output can only be used with a single input")
    if args.buffer_size < 1:
        parser.error("--buffer-size must be positive")
    return args


def resolve_mode(source: Path, magic: bytes, requested: str = AUTO) -> Mode:
    if requested != AUTO:
        return Mode(requested)

    name = source.name.lower()
    if name.endswith(DECRYPTED_SUFFIX):
        return Mode.ENCRYPT
    if name.endswith(PAR_SUFFIX):
        return Mode.DECRYPT

    if detect_par_type(magic) is not None:
        return Mode.DECRYPT
    if magic[: len(PARC_MAGIC)] == PARC_MAGIC:
        return Mode.ENCRYPT

    raise ParCryptError(f"unable to determine operation mode for {source}; pass --mode")


def resolve_par_type(source: Path, magic: bytes, mode: Mode, requested: str = AUTO) -> ParType:
    if requested != AUTO:
        return PAR_TYPES[requested]

    detected = detect_par_type(magic)
    if detected is not None:
        return detected

    if mode is Mode.ENCRYPT:
        # Longest name first so chara2 is not mistaken for chara.
        name = source.name.lower()
        for par_type in sorted(PAR_TYPES.values(), key=lambda t: len(t.name), reverse=True):
            if name.startswith(par_type.name):
                return par_type

    raise ParCryptError(f"unable to determine PAR type for {source}; pass --par-type")


def default_output_path(source: Path, mode: Mode) -> Path:
    name = source.name
    if mode is Mode.ENCRYPT:
        if name.lower().endswith(DECRYPTED_SUFFIX):
            return source.with_name(name[: -len(DECRYPTED_SUFFIX)] + PAR_SUFFIX)
        return source.with_name(source.stem + PAR_SUFFIX)
    return source.with_name(source.stem + DECRYPTED_SUFFIX)


def plan_job(
    source: Path,
    output: Optional[Path],
    requested_mode: str,
    requested_type: str,
) -> CryptJob:
    magic = read_magic(source)
    mode = resolve_mode(source, magic, requested_mode)
    par_type = resolve_par_type(source, magic, mode, requested_type)
    target = output if output is not None else default_output_path(source, mode)
    if target.resolve() == source.resolve():
        raise ParCryptError(f"output {target} would overwrite the input; pass --output")
    return CryptJob(source=source, target=target, mode=mode, par_type=par_type)


def _record_failure(stats: CryptStats, source: Path, exc: Exception) -> None:
    logging.error("%s", exc)
    stats.files_failed += 1
    stats.failures.append(f"{source}: {exc}")


def claim_targets(
    planned: Sequence[CryptJob],
    inputs: Sequence[Path],
    stats: CryptStats,
) -> List[CryptJob]:
    """Drop jobs whose output is another job's input or was claimed by an earlier job."""
    sources = {source.resolve(): source for source in inputs}
    claimed: Dict[Path, Path] = {}
    jobs: List[CryptJob] = []

    for job in planned:
        target = job.target.resolve()
        if target in sources:
            error = ParCryptError(f"output {job.target} is also an input ({sources[target]})")
        elif target in claimed:
            error = ParCryptError(f"output {job.target} is already written from {claimed[target]}")
        else:
            claimed[target] = job.source
            jobs.append(job)
            continue
        _record_failure(stats, job.source, error)
    return jobs


def compute_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def run_job(
    job: CryptJob,
    keys_dir: Path,
    buffer_size: int,
    scalar: bool,
    overwrite: bool,
    dry_run: bool,
    compute_hash: bool,
) -> Tuple[CryptStats, Optional[Dict[str, object]]]:
    stats = CryptStats()

    if job.target.exists() and not overwrite:
        logging.warning("Output already exists, skipping (use --overwrite): %s", job.target)
        stats.files_skipped += 1
        return stats, None

    if dry_run:
        logging.info(
            "[dry-run][%s][%s] %s -> %s",
            job.mode.value,
            job.par_type.name,
            job.source,
            job.target,
        )
        return stats, None

    logging.info(
        "%sing %s (%s) -> %s",
        job.mode.value.capitalize(),
        job.source,
        job.par_type.description,
        job.target,
    )
    key_table = load_key_table(job.par_type, keys_dir)
    job.target.parent.mkdir(parents=True, exist_ok=True)

    with job.source.open("rb", buffering=buffer_size) as reader:
        try:
            with job.target.open("wb", buffering=buffer_size) as writer:
                result = transform_stream(
                    reader,
                    writer,
                    key_table,
                    job.mode,
                    buffer_size=buffer_size,
                    scalar=scalar,
                )
        except OSError:
            job.target.unlink(missing_ok=True)
            raise

    bytes_read = job.source.stat().st_size
    logging.debug(
        "%s: %d word(s), %d padding byte(s), %s engine",
        job.target,
        result.words,
        result.bytes_written - bytes_read,
        "scalar" if scalar else "batched",
    )

    if job.mode is Mode.DECRYPT:
        stats.files_decrypted += 1
    else:
        stats.files_encrypted += 1
    stats.bytes_read += bytes_read
    stats.bytes_written += result.bytes_written

    entry: Dict[str, object] = {
        "source": str(job.source),
        "target": str(job.target),
        "mode": job.mode.value,
        "par_type": job.par_type.name,
        "bytes_read": bytes_read,
        "bytes_written": result.bytes_written,
    }
    if compute_hash:
        entry["sha256"] = compute_sha256(job.target)
    return stats, entry


def _crypt_worker(
    job: CryptJob,
    keys_dir: Path,
    buffer_size: int,
    scalar: bool,
    overwrite: bool,
    dry_run: bool,
    compute_hash: bool,
) -> Tuple[CryptStats, Optional[Dict[str, object]]]:
    try:
        return run_job(
            job,
            keys_dir=keys_dir,
            buffer_size=buffer_size,
            scalar=scalar,
            overwrite=overwrite,
            dry_run=dry_run,
            compute_hash=compute_hash,
        )
    except (OSError, KeyTableError) as exc:
        logging.error("Failed to %s %s: %s", job.mode.value, job.source, exc)
        stats = CryptStats(files_failed=1)
        stats.failures.append(f"{job.source}: {exc}")
        return stats, None


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    keys_dir = args.keys_dir.expanduser().resolve()
    stats = CryptStats()
    planned: List[CryptJob] = []

    for source in args.inputs:
        if not source.is_file():
            logging.error("Input file does not exist: %s", source)
            stats.files_failed += 1
            stats.failures.append(f"{source}: missing input")
            continue
        try:
            planned.append(plan_job(source, args.output, args.mode, args.par_type))
        except (OSError, ParCryptError) as exc:
            _record_failure(stats, source, exc)

    jobs = claim_targets(planned, args.inputs, stats)

    logging.debug("Using keys from %s", keys_dir)
    workers = max(1, min(args.workers, len(jobs)))
    worker_fn = partial(
        _crypt_worker,
        keys_dir=keys_dir,
        buffer_size=args.buffer_size,
        scalar=args.scalar,
        overwrite=args.overwrite,
        dry_run=args.dry_run,
        compute_hash=args.hash,
    )

    entries: List[Dict[str, object]] = []
    if workers <= 1:
        for worker_stats, entry in map(worker_fn, jobs):
            merge_stats(stats, worker_stats)
            if entry is not None:
                entries.append(entry)
    else:
        logging.info("Using %d worker process(es).", workers)
        with ProcessPoolExecutor(max_workers=workers) as executor:
            for worker_stats, entry in executor.map(worker_fn, jobs):
                merge_stats(stats, worker_stats)
                if entry is not None:
                    entries.append(entry)

    if args.report:
        report_payload: Dict[str, object] = {
            "keys_dir": str(keys_dir),
            "stats": {
                "files_decrypted": stats.files_decrypted,
                "files_encrypted": stats.files_encrypted,
                "files_skipped": stats.files_skipped,
                "files_failed": stats.files_failed,
                "bytes_read": stats.bytes_read,
                "bytes_written": stats.bytes_written,
            },
            "files": entries,
            "failures": stats.failures,
        }
        if args.dry_run:
            logging.info("[dry-run] report would be written to %s", args.report)
        else:
            args.report.parent.mkdir(parents=True, exist_ok=True)
            args.report.write_text(json.dumps(report_payload, indent=2), encoding="utf-8")
            logging.info("Wrote report to %s", args.report)

    logging.info(
        "Decrypted: %d | Encrypted: %d | Skipped: %d | Failed: %d | %d bytes read / %d bytes written",
        stats.files_decrypted,
        stats.files_encrypted,
        stats.files_skipped,
        stats.files_failed,
        stats.bytes_read,
        stats.bytes_written,
    )
    return 0 if stats.files_failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
