"""Content hashing and integrity verification for captured evidence.

Hashes are computed on the exact bytes delivered by the camera or
microphone, before anything is written to disk. Comparison of digests is
case-insensitive.
"""
import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

from database import utcnow
from errors import HashingError

logger = logging.getLogger(__name__)

ALGORITHM = "SHA-256"
READ_BLOCK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class HashResult:
    digest: str
    algorithm: str
    timestamp: datetime
    byte_length: int


@dataclass
class VerificationResult:
    is_valid: bool
    expected_hash: str
    actual_hash: str
    verified_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None


def hashes_match(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


class ContentHasher:
    """SHA-256 digests of raw evidence bytes."""

    algorithm = ALGORITHM

    def hash_bytes(self, data: bytes) -> HashResult:
        if data is None:
            raise HashingError("No captured bytes to hash")
        try:
            digest = hashlib.sha256(data).hexdigest()
        except (TypeError, ValueError) as e:
            raise HashingError(f"Hashing failed: {e}") from e
        return HashResult(
            digest=digest,
            algorithm=ALGORITHM,
            timestamp=utcnow(),
            byte_length=len(data),
        )

    def hash_base64(self, encoded: str) -> HashResult:
        """Hash a base64 buffer as handed over by the capture host."""
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise HashingError(f"Invalid base64 capture buffer: {e}") from e
        return self.hash_bytes(data)

    def hash_file(self, path: str) -> HashResult:
        sha256 = hashlib.sha256()
        size = 0
        try:
            with open(path, "rb") as f:
                while True:
                    block = f.read(READ_BLOCK_SIZE)
                    if not block:
                        break
                    sha256.update(block)
                    size += len(block)
        except OSError as e:
            raise HashingError(f"Could not read {path} for hashing: {e}") from e
        return HashResult(
            digest=sha256.hexdigest(),
            algorithm=ALGORITHM,
            timestamp=utcnow(),
            byte_length=size,
        )

    def verify_file_hash(self, path: str, expected_hash: Optional[str]) -> VerificationResult:
        """Re-hash a file on disk and compare it with the recorded digest."""
        if not os.path.exists(path):
            return VerificationResult(
                is_valid=False,
                expected_hash=expected_hash,
                actual_hash="",
                error=f"File not found: {path}",
            )
        try:
            actual = self.hash_file(path).digest
        except HashingError as e:
            logger.error(f"Verification read failed for {path}: {e}")
            return VerificationResult(
                is_valid=False,
                expected_hash=expected_hash,
                actual_hash="",
                error=str(e),
            )

        is_valid = hashes_match(actual, expected_hash)
        if not is_valid:
            logger.warning(
                f"Hash mismatch for {path}: expected {(expected_hash or '')[:12]}..., got {actual[:12]}..."
            )
        return VerificationResult(is_valid=is_valid, expected_hash=expected_hash, actual_hash=actual)

    def batch_verify(self, items: Iterable[Tuple[str, str, str]]) -> Dict[str, VerificationResult]:
        """Verify many files; items are (id, path, expected_hash)."""
        results = {}
        for item_id, path, expected in items:
            results[item_id] = self.verify_file_hash(path, expected)
        return results


def all_valid(results: Dict[str, VerificationResult]) -> bool:
    return all(r.is_valid for r in results.values())
