"""
Backup verification.

Quick, full and cloud tiers validate a snapshot against its manifest and
report pass, warning or fail for every file and database artifact.
"""

from checkpoint.verification.checks import (
    ENCRYPTED_PASS_MESSAGE,
    check_database,
    check_file,
    scan_side_files,
)
from checkpoint.verification.engine import Verifier
from checkpoint.verification.models import (
    CheckStatus,
    CloudCheck,
    VerificationMode,
    VerificationReport,
    VerificationResult,
)
from checkpoint.verification.report import (
    LAST_VERIFICATION_FILENAME,
    load_last_verification,
    render_compact,
    render_human,
    render_json,
    save_last_verification,
)

__all__ = [
    "Verifier",
    "VerificationMode",
    "VerificationReport",
    "VerificationResult",
    "CheckStatus",
    "CloudCheck",
    "check_file",
    "check_database",
    "scan_side_files",
    "ENCRYPTED_PASS_MESSAGE",
    "render_human",
    "render_json",
    "render_compact",
    "save_last_verification",
    "load_last_verification",
    "LAST_VERIFICATION_FILENAME",
]
