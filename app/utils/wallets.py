"""Wallet address normalization shared by the ledger, cache and routers."""

import re

# 0x-prefixed 20-byte hex address (EVM)
_EVM_ADDRESS = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_wallet(address: str) -> str:
    """Return the canonical ledger key for a wallet address.

    - Strips surrounding whitespace
    - Lowercases (addresses are case-insensitive; checksummed input is accepted)
    - Raises ValueError for empty input

    Non-EVM strings are accepted as-is after normalization; the ledger does
    not validate address format.
    """
    if address is None or not str(address).strip():
        raise ValueError("wallet address must be a non-empty string")
    return str(address).strip().lower()


def is_evm_address(address: str) -> bool:
    """True if *address* normalizes to a 0x-prefixed 40-hex-digit address."""
    try:
        return bool(_EVM_ADDRESS.match(normalize_wallet(address)))
    except ValueError:
        return False
