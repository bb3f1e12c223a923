#!/usr/bin/env python3
"""Generate an RSA key pair for signing access and refresh tokens.

Usage:
    # Write private.pem / public.pem (mode 0600) into ./certs
    python scripts/generate_keys.py --out-dir certs

    # Print single-line values ready for a .env file
    python scripts/generate_keys.py --env

Never commit the private key to version control.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from horizonauth.service.keys import generate_key_pair, write_key_pair


def _env_line(name: str, pem: str) -> str:
    escaped = pem.strip().replace("\n", "\\n")
    return f'{name}="{escaped}"'


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate an RS256 signing key pair")
    parser.add_argument("--out-dir", type=Path, default=Path("certs"))
    parser.add_argument("--bits", type=int, default=2048, choices=(2048, 3072, 4096))
    parser.add_argument(
        "--env",
        action="store_true",
        help="Print JWT_PRIVATE_KEY / JWT_PUBLIC_KEY lines instead of writing files",
    )
    args = parser.parse_args()

    private_pem, public_pem = generate_key_pair(args.bits)
    if args.env:
        print(_env_line("JWT_PRIVATE_KEY", private_pem))
        print(_env_line("JWT_PUBLIC_KEY", public_pem))
        return 0

    args.out_dir.mkdir(parents=True, exist_ok=True)
    private_path, public_path = write_key_pair(
        args.out_dir,
        private_pem,
        public_pem,
        private_name="private.pem",
        public_name="public.pem",
    )
    print(f"Private key: {private_path}")
    print(f"Public key:  {public_path}")
    print("Keep the private key out of version control.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
