import hashlib
import io

from kbsync.services.hashing import content_hash


def test_digest_is_sha256_hex_of_the_bytes():
    data = b"%PDF-1.7 lesson plan"
    assert content_hash(data) == hashlib.sha256(data).hexdigest()
    assert len(content_hash(data)) == 64


def test_file_object_and_bytes_agree():
    data = b"x" * (3 * 1024 * 1024 + 17)
    assert content_hash(io.BytesIO(data)) == content_hash(data)


def test_different_content_different_digest():
    assert content_hash(b"chapter 1") != content_hash(b"chapter 2")


def test_empty_input():
    assert content_hash(b"") == hashlib.sha256(b"").hexdigest()
