# Crypto Module - client-side key derivation and item encryption
#
# Nothing in this package talks to the network or the disk.

from .envelope import EncryptedBlob, decrypt, encrypt
from .keys import (
    KdfAlgorithm,
    MasterSecret,
    derive_keys,
    export_key,
    hash_auth_key,
    import_key,
    split_master_key,
)
from .password_gen import PasswordOptions, check_master_password, generate_password

__all__ = [
    "EncryptedBlob",
    "encrypt",
    "decrypt",
    "KdfAlgorithm",
    "MasterSecret",
    "derive_keys",
    "split_master_key",
    "hash_auth_key",
    "export_key",
    "import_key",
    "PasswordOptions",
    "generate_password",
    "check_master_password",
]
