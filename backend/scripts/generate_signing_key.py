"""Generate an RSA signing key pair for access tokens.

Usage:
    python backend/scripts/generate_signing_key.py [--bits 2048] [--out DIR]

Without ``--out`` the private key is printed as a ``JWT_PRIVATE_KEY`` line
for the ``.env`` file. With ``--out`` the pair is written to
``<kid>.key`` / ``<kid>.pub``, ready for ``JWT_PRIVATE_KEY_FILE`` and, once
the key is retired, ``JWT_RETIRED_PUBLIC_KEYS``.
"""

import argparse
from datetime import datetime, timezone
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def generate(bits: int) -> tuple[bytes, bytes]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--bits", type=int, default=2048, choices=(2048, 3072, 4096))
    parser.add_argument("--out", type=Path, help="directory to write <kid>.key and <kid>.pub")
    parser.add_argument("--kid", help="key id, defaults to umi-<date>")
    args = parser.parse_args()

    kid = args.kid or f"umi-{datetime.now(timezone.utc):%Y%m%d}"
    private_pem, public_pem = generate(args.bits)

    if args.out:
        args.out.mkdir(parents=True, exist_ok=True)
        key_path = args.out / f"{kid}.key"
        key_path.write_bytes(private_pem)
        key_path.chmod(0o600)
        (args.out / f"{kid}.pub").write_bytes(public_pem)
        print(f"JWT_KEY_ID={kid}")
        print(f"JWT_PRIVATE_KEY_FILE={key_path}")
        return

    escaped = private_pem.decode("ascii").strip().replace("\n", "\\n")
    print(f"JWT_KEY_ID={kid}")
    print(f'JWT_PRIVATE_KEY="{escaped}"')


if __name__ == "__main__":
    main()
