"""
Filesystem proof store — keeps proof-of-issuance documents on disk.

Implements the ProofDocumentStore port. Documents are laid out as
`{root}/{client_id}/{grant_id}.pdf` and the returned reference is that
path relative to `root`. Writes go to a temporary file first and are then
renamed, so a reader never sees a half-written document.

Client ids are reduced to a single safe path segment and references are
resolved before use; anything that would land outside `root` is refused
with VALIDATION_ERROR.
"""

from __future__ import annotations

import re
from pathlib import Path
from uuid import UUID

import structlog
from railway import ErrorCode
from railway.result import Result

log = structlog.get_logger()

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _client_segment(client_id: str) -> str | None:
    segment = _UNSAFE.sub("_", client_id)
    if not segment.strip("."):
        return None
    return segment


class FilesystemProofStore:
    def __init__(self, root: Path | str, suffix: str = ".pdf") -> None:
        self._root = Path(root)
        self._suffix = suffix

    def store(self, client_id: str, grant_id: UUID, document: bytes) -> Result[str]:
        segment = _client_segment(client_id)
        if segment is None:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"Client id {client_id!r} cannot name a proof directory",
                details={"client_id": client_id},
            )
        return Result.from_computation(
            lambda: self._write(segment, grant_id, document),
            ErrorCode.DATABASE_ERROR,
            "Failed to store proof document",
        )

    def read(self, reference: str) -> Result[bytes]:
        """Return the document stored under `reference`."""
        path = self._root / reference
        if not self._inside_root(path):
            log.warning("proof_store.reference_outside_root", reference=reference)
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"Proof reference {reference!r} points outside the proof store",
                details={"reference": reference},
            )
        if not path.is_file():
            return Result.failure(ErrorCode.NOT_FOUND, f"Proof document {reference} not found")
        return Result.from_computation(
            path.read_bytes, ErrorCode.DATABASE_ERROR, "Failed to read proof document"
        )

    def _inside_root(self, path: Path) -> bool:
        return path.resolve().is_relative_to(self._root.resolve())

    def _write(self, segment: str, grant_id: UUID, document: bytes) -> str:
        directory = self._root / segment
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / f"{grant_id}{self._suffix}"
        partial = target.with_suffix(target.suffix + ".part")
        partial.write_bytes(document)
        partial.replace(target)
        reference = target.relative_to(self._root).as_posix()
        log.info("proof_store.stored", reference=reference, size_bytes=len(document))
        return reference
