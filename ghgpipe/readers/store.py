"""Content-addressed store for downloaded report bytes.

Files are named by fingerprint, so writing the same document twice is a
no-op and a retried fetch never leaves a second copy behind.
"""
from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path


def fingerprint_of(data: bytes) -> str:
    """SHA-256 hex digest of the raw document bytes."""
    return hashlib.sha256(data).hexdigest()


class DocumentStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, fingerprint: str) -> Path:
        return self.root / fingerprint

    def exists(self, fingerprint: str) -> bool:
        return self.path_for(fingerprint).is_file()

    def write(self, data: bytes) -> str:
        """Store *data* under its fingerprint and return the fingerprint."""
        fingerprint = fingerprint_of(data)
        target = self.path_for(fingerprint)
        if target.is_file():
            return fingerprint
        self.root.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a concurrent reader never sees a partial file.
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".partial-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return fingerprint

    def read(self, fingerprint: str) -> bytes:
        path = self.path_for(fingerprint)
        if not path.is_file():
            raise FileNotFoundError(f"No stored document for fingerprint {fingerprint}")
        return path.read_bytes()
