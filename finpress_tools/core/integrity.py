"""Archive integrity verification against detached md5 files.

Releases are published alongside a ``<archive-url>.md5`` resource holding
the expected MD5 of the archive as plain text. Verification has three
outcomes:

1. ``verified``: the computed hash equals the published one
2. ``unavailable``: no published hash could be obtained (warned, not fatal)
3. ``mismatch``: the hashes differ; the archive must not be used or cached
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field

from finpress_tools.core.errors import IntegrityError
from finpress_tools.core.utils import compute_file_md5


class VerificationStatus(StrEnum):
    """Outcome of an integrity check."""
    VERIFIED = "verified"
    UNAVAILABLE = "unavailable"
    MISMATCH = "mismatch"


class VerificationResult(BaseModel):
    """Result of verifying a downloaded archive."""
    status: VerificationStatus
    expected: str | None = Field(None, description="Published md5")
    actual: str | None = Field(None, description="Computed md5")
    url: str | None = Field(None, description="Archive URL")
    reason: str | None = Field(None, description="Why verification was unavailable")

    @property
    def usable(self) -> bool:
        """Whether the archive may be extracted and cached."""
        return self.status is not VerificationStatus.MISMATCH

    def raise_for_mismatch(self) -> None:
        """Raise IntegrityError if the hashes did not match.

        Raises:
            IntegrityError: If status is mismatch
        """
        if not self.usable:
            raise IntegrityError(
                f"md5 hash for download ({self.actual}) is different than "
                f"the release hash ({self.expected}).",
                expected=self.expected,
                actual=self.actual,
                url=self.url,
            )


def normalize_md5(body: str) -> str:
    """Extract the hex digest from a detached hash body.

    Accepts bare digests as well as ``md5sum`` style ``<digest>  <name>`` lines.
    """
    stripped = body.strip()
    if not stripped:
        return ""
    return stripped.split()[0].lower()


def verify_file_md5(path: Path, expected_md5: str, *, url: str | None = None) -> VerificationResult:
    """Compare a file's MD5 with a published digest.

    Args:
        path: Downloaded archive
        expected_md5: Published digest (body of the .md5 resource)
        url: Archive URL, recorded on the result

    Returns:
        VerificationResult with status verified or mismatch
    """
    expected = normalize_md5(expected_md5)
    actual = compute_file_md5(path)
    status = VerificationStatus.VERIFIED if actual == expected else VerificationStatus.MISMATCH
    return VerificationResult(status=status, expected=expected, actual=actual, url=url)
