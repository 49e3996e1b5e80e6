"""
Artifact encryption with age.
"""

from checkpoint.encryption.age import AGE_SUFFIX, AgeEncryptor, EncryptionError

__all__ = [
    "AgeEncryptor",
    "EncryptionError",
    "AGE_SUFFIX",
]
