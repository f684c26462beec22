from __future__ import annotations

import base64
import binascii
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from sfdelta.core.errors import ReceiptError, ValidationNotPassedError

from .models import JobResult

RECEIPT_SCHEMA = {"name": "sfdelta.validation_receipt", "version": "1.0"}


@dataclass(frozen=True)
class KeyPairPaths:
    """Generated key locations."""

    private_key_path: str
    public_key_path: str


def _canonical_json_bytes(obj: Mapping[str, Any]) -> bytes:
    """Canonical JSON serialization for signing.

    Security notes:
    - Uses stable key ordering and separators to avoid signature ambiguity.
    """

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def generate_ed25519_keypair(out_dir: str | Path, *, prefix: str = "sfdelta_ed25519") -> KeyPairPaths:
    """Generate an Ed25519 keypair on disk (PEM).

    Security notes:
    - Private key is written unencrypted; protect it with file permissions.
    """

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    priv = Ed25519PrivateKey.generate()
    priv_path = out / f"{prefix}_private.pem"
    pub_path = out / f"{prefix}_public.pem"

    priv_path.write_bytes(
        priv.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    pub_path.write_bytes(
        priv.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )

    return KeyPairPaths(private_key_path=str(priv_path), public_key_path=str(pub_path))


def load_private_key_pem(path: str | Path) -> Ed25519PrivateKey:
    try:
        key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as e:
        raise ReceiptError(f"cannot load private key {path}: {e}") from e
    if not isinstance(key, Ed25519PrivateKey):
        raise ReceiptError("not an Ed25519 private key")
    return key


def load_public_key_pem(path: str | Path) -> Ed25519PublicKey:
    try:
        key = serialization.load_pem_public_key(Path(path).read_bytes())
    except (OSError, ValueError) as e:
        raise ReceiptError(f"cannot load public key {path}: {e}") from e
    if not isinstance(key, Ed25519PublicKey):
        raise ReceiptError("not an Ed25519 public key")
    return key


@dataclass(frozen=True)
class ValidationReceipt:
    """
    Signed statement that a check-only job passed for one package and org.

    Only the canonical payload (everything but `signature`) is signed.
    """

    job_id: str
    org_alias: str
    package_hash: str
    status: str
    issued_at: str
    signer_id: Optional[str] = None
    signature: str = ""

    def payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("signature")
        data["schema"] = dict(RECEIPT_SCHEMA)
        data["algorithm"] = "Ed25519"
        return data

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidationReceipt":
        try:
            return cls(
                job_id=str(data["job_id"]),
                org_alias=str(data["org_alias"]),
                package_hash=str(data["package_hash"]),
                status=str(data["status"]),
                issued_at=str(data["issued_at"]),
                signer_id=data.get("signer_id"),
                signature=str(data.get("signature") or ""),
            )
        except KeyError as e:
            raise ReceiptError(f"receipt missing field {e}") from e


def issue_receipt(
    validation: JobResult,
    private_key: Ed25519PrivateKey,
    *,
    signer_id: Optional[str] = None,
) -> ValidationReceipt:
    """Sign a receipt for a passed check-only job."""

    if not validation.check_only or not validation.status.is_success:
        raise ValidationNotPassedError(
            f"job {validation.job_id} is not a passed validation ({validation.status.value})"
        )
    if not validation.package_hash or not validation.org_alias:
        raise ReceiptError(f"job {validation.job_id} is not bound to a package and org")

    unsigned = ValidationReceipt(
        job_id=validation.job_id,
        org_alias=validation.org_alias,
        package_hash=validation.package_hash,
        status=validation.status.value,
        issued_at=datetime.now(timezone.utc).isoformat(),
        signer_id=signer_id,
    )
    sig = private_key.sign(_canonical_json_bytes(unsigned.payload()))
    return ValidationReceipt(**{**unsigned.to_dict(), "signature": base64.b64encode(sig).decode("ascii")})


def verify_receipt(receipt: ValidationReceipt, public_key: Ed25519PublicKey, validation: JobResult) -> None:
    """
    Check the signature and that the receipt describes `validation`.

    Raises ReceiptError on any mismatch.
    """

    try:
        sig = base64.b64decode(receipt.signature.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ReceiptError("receipt signature is not valid base64") from e

    try:
        public_key.verify(sig, _canonical_json_bytes(receipt.payload()))
    except InvalidSignature as e:
        raise ReceiptError(f"receipt for job {receipt.job_id} does not verify") from e

    if (
        receipt.job_id != validation.job_id
        or receipt.package_hash != validation.package_hash
        or receipt.org_alias != validation.org_alias
    ):
        raise ReceiptError(f"receipt for job {receipt.job_id} does not describe validation {validation.job_id}")
