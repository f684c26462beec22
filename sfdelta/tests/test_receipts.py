from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from sfdelta.core.errors import ReceiptError, ValidationNotPassedError
from sfdelta.core.jobs.models import JobResult, JobStatus
from sfdelta.core.jobs.receipts import (
    RECEIPT_SCHEMA,
    ValidationReceipt,
    generate_ed25519_keypair,
    issue_receipt,
    load_private_key_pem,
    load_public_key_pem,
    verify_receipt,
)


def _keys(tmp_path, prefix="k"):
    paths = generate_ed25519_keypair(tmp_path, prefix=prefix)
    return load_private_key_pem(paths.private_key_path), load_public_key_pem(paths.public_key_path)


def _passed(**kw):
    data = dict(job_id="0Af7", status=JobStatus.SUCCEEDED, check_only=True, package_hash="pkg-1", org_alias="dev")
    data.update(kw)
    return JobResult(**data)


def test_issue_and_verify(tmp_path):
    priv, pub = _keys(tmp_path)
    validation = _passed()

    receipt = issue_receipt(validation, priv, signer_id="ci")

    assert receipt.signature
    assert receipt.payload()["schema"] == RECEIPT_SCHEMA
    verify_receipt(receipt, pub, validation)
    verify_receipt(ValidationReceipt.from_dict(receipt.to_dict()), pub, validation)


def test_tampered_receipt_fails(tmp_path):
    priv, pub = _keys(tmp_path)
    validation = _passed()
    receipt = issue_receipt(validation, priv)

    with pytest.raises(ReceiptError):
        verify_receipt(replace(receipt, package_hash="pkg-2"), pub, validation)


def test_receipt_for_another_validation_fails(tmp_path):
    priv, pub = _keys(tmp_path)
    receipt = issue_receipt(_passed(), priv)

    with pytest.raises(ReceiptError):
        verify_receipt(receipt, pub, _passed(job_id="0Af8"))


def test_wrong_key_and_bad_signature_fail(tmp_path):
    priv, _ = _keys(tmp_path / "a")
    _, other_pub = _keys(tmp_path / "b")
    validation = _passed()
    receipt = issue_receipt(validation, priv)

    with pytest.raises(ReceiptError):
        verify_receipt(receipt, other_pub, validation)
    with pytest.raises(ReceiptError):
        verify_receipt(replace(receipt, signature="%%%not-base64%%%"), other_pub, validation)


def test_only_passed_validations_get_receipts(tmp_path):
    priv, _ = _keys(tmp_path)

    with pytest.raises(ValidationNotPassedError):
        issue_receipt(_passed(status=JobStatus.FAILED), priv)
    with pytest.raises(ValidationNotPassedError):
        issue_receipt(_passed(check_only=False), priv)


def test_from_dict_requires_fields():
    with pytest.raises(ReceiptError):
        ValidationReceipt.from_dict({"job_id": "0Af1"})


def test_loading_keys_reports_receipt_errors(tmp_path):
    with pytest.raises(ReceiptError):
        load_private_key_pem(tmp_path / "missing.pem")

    garbage = Path(tmp_path / "garbage.pem")
    garbage.write_text("not a key", encoding="utf-8")
    with pytest.raises(ReceiptError):
        load_public_key_pem(garbage)
