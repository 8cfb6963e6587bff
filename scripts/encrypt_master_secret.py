"""
Encrypt a custody master seed for CUSTODY_MASTER_SECRET_ENCRYPTED.
Run: python -m scripts.encrypt_master_secret --key "<CUSTODY_ENCRYPTION_KEY>" [--seed <64 hex chars>]
Without --seed a fresh random seed is generated. The seed itself is never printed.
"""
import argparse
import os
import secrets
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.custody import (
    DEFAULT_SS58_FORMAT,
    CustodyConfig,
    KeyCustody,
    encrypt_secret,
    parse_master_secret,
    wipe,
)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--key", required=True, help="encryption passphrase (CUSTODY_ENCRYPTION_KEY)")
    parser.add_argument("--seed", help="existing 32-byte hex seed; generated when omitted")
    parser.add_argument("--ss58-format", type=int, default=DEFAULT_SS58_FORMAT)
    args = parser.parse_args(argv)

    seed = parse_master_secret((args.seed or secrets.token_hex(32)).encode("ascii"))
    try:
        token = encrypt_secret(seed.hex(), args.key)
    finally:
        wipe(seed)

    custody = KeyCustody(CustodyConfig(token, args.key, args.ss58_format))
    print(f"CUSTODY_MASTER_SECRET_ENCRYPTED={token}")
    print(f"Platform fee address (//0): {custody.platform_fee_address()}")
    print(f"Escrow root address  (//1): {custody.escrow_address()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
