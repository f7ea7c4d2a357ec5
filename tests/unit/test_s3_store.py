from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from common.errors import BackendNotFoundError, ConflictError, CorruptStateError
from state.models import Resource, StateDocument
from state.s3_store import S3StateStore


BUCKET = "acme-tf-state"
KEY = "prod/network/terraform.tfstate"


def _store(s3, **kwargs) -> S3StateStore:
    return S3StateStore(s3=s3, bucket=BUCKET, key=KEY, **kwargs)


def _doc(serial: int = 1, name: str = "main") -> StateDocument:
    return StateDocument(
        serial=serial,
        lineage="lineage-1",
        resources=[Resource(type="aws_vpc", name=name)],
    )


def test_read_missing_returns_none(backend):
    s3, _ = backend
    assert _store(s3).read() is None


def test_read_missing_bucket_raises_not_found(s3):
    with pytest.raises(BackendNotFoundError):
        _store(s3).read()
    with pytest.raises(BackendNotFoundError):
        _store(s3).write(_doc())


def test_write_and_read_roundtrip(backend):
    s3, _ = backend
    store = _store(s3)

    src = _doc()
    etag, version_id, digest = store.write(src)
    assert etag.startswith('"')
    assert version_id

    stored = store.read()
    assert stored.etag == etag
    assert stored.version_id == version_id
    assert stored.digest == digest
    assert stored.document == src


def test_write_applies_server_side_encryption(backend):
    s3, _ = backend
    _store(s3, sse_algorithm="aws:kms", kms_key_id="alias/tf-state").write(_doc())

    entry = s3.buckets[BUCKET]["objects"][KEY][-1]
    assert entry["ServerSideEncryption"] == "aws:kms"
    assert entry["SSEKMSKeyId"] == "alias/tf-state"


def test_write_with_if_match_succeeds_when_etag_matches(backend):
    s3, _ = backend
    store = _store(s3)

    etag1, _, _ = store.write(_doc(1))
    etag2, _, _ = store.write(_doc(2, name="other"), if_match=etag1)
    assert etag2 != etag1
    assert store.read().document.serial == 2


def test_write_with_if_match_raises_on_conflict(backend):
    s3, _ = backend
    store1 = _store(s3)
    store2 = _store(s3)

    etag1, _, _ = store1.write(_doc(1))
    store1.write(_doc(2, name="newer"), if_match=etag1)

    with pytest.raises(ConflictError):
        store2.write(_doc(2, name="stale"), if_match=etag1)
    assert store1.read().document.resources[0].name == "newer"


def test_create_only_write_refuses_existing_object(backend):
    s3, _ = backend
    store = _store(s3)
    store.write(_doc(1), if_none_match=True)
    with pytest.raises(ConflictError):
        store.write(_doc(1, name="again"), if_none_match=True)


def test_conditional_flags_are_exclusive(backend):
    s3, _ = backend
    with pytest.raises(ValueError):
        _store(s3).write(_doc(), if_match='"x"', if_none_match=True)


def test_read_rejects_invalid_body(backend):
    s3, _ = backend
    s3.tamper(BUCKET, KEY, b"garbage")
    with pytest.raises(CorruptStateError):
        _store(s3).read()


def test_fernet_envelope_roundtrip_and_wrong_key(backend):
    s3, _ = backend
    key = Fernet.generate_key()
    store = _store(s3, fernet_key=key)
    store.write(_doc())

    body = s3.buckets[BUCKET]["objects"][KEY][-1]["Body"]
    assert b"aws_vpc" not in body
    assert store.read().document == _doc()

    with pytest.raises(CorruptStateError):
        _store(s3, fernet_key=Fernet.generate_key()).read()


def test_versions_are_retained_newest_first(backend):
    s3, _ = backend
    store = _store(s3)
    _, v1, _ = store.write(_doc(1))
    _, v2, _ = store.write(_doc(2, name="b"))
    _, v3, _ = store.write(_doc(3, name="c"))

    versions = store.list_versions()
    assert [v.version_id for v in versions] == [v3, v2, v1]
    assert versions[0].is_latest
    assert store.read(version_id=v1).document.serial == 1
    assert store.read(version_id="does-not-exist") is None


def test_head_and_list_keys(backend):
    s3, _ = backend
    store = _store(s3)
    assert store.head() is None
    etag, _, _ = store.write(_doc())
    assert store.head() == etag
    assert store.list_keys("prod/") == [KEY]
    assert store.bucket_exists()
