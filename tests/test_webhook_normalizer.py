import pytest

from kbsync.core.errors import MalformedPayloadError
from kbsync.services.webhook import normalize


def test_flat_shape():
    update = normalize({
        "document_id": "rag-1",
        "status": "completed",
        "vector_ids": ["v1", "v2"],
    })
    assert update.external_ref == "rag-1"
    assert update.status == "completed"
    assert update.result_refs == ("v1", "v2")
    assert update.error_detail is None


def test_nested_document_shape_with_chunk_objects():
    update = normalize({
        "status": "completed",
        "document": {
            "id": "rag-2",
            "content": "Cells are the basic unit of life.",
            "chunks": [{"id": "c1", "text": "..."}, {"vector_id": "c2"}, {"chunk_id": "c3"}],
        },
    })
    assert update.external_ref == "rag-2"
    assert update.result_refs == ("c1", "c2", "c3")
    assert update.extracted_text == "Cells are the basic unit of life."


def test_nested_data_shape():
    update = normalize({
        "data": {"document_id": "rag-3", "status": "FAILED", "error_message": "OCR failed"},
    })
    assert update.external_ref == "rag-3"
    assert update.status == "failed"
    assert update.error_detail == "OCR failed"


@pytest.mark.parametrize("key", ["vector_ids", "vectorIds", "chunks", "segments"])
def test_result_list_synonyms(key):
    update = normalize({"id": "rag-4", "status": "completed", key: ["a"]})
    assert update.result_refs == ("a",)


def test_top_level_ref_wins_over_nested():
    update = normalize({
        "document_id": "top",
        "id": "second",
        "status": "completed",
        "document": {"id": "nested"},
        "data": {"document_id": "data"},
        "vector_ids": ["v"],
    })
    assert update.external_ref == "top"


def test_first_non_empty_result_list_wins():
    update = normalize({
        "id": "rag-5",
        "status": "completed",
        "vector_ids": [],
        "vectorIds": ["b1"],
        "document": {"chunks": ["ignored"]},
    })
    assert update.result_refs == ("b1",)


def test_result_refs_deduplicated_in_order():
    update = normalize({"id": "rag-6", "status": "completed", "vector_ids": ["x", "y", "x", "", None, "z"]})
    assert update.result_refs == ("x", "y", "z")


def test_structured_error_is_kept_as_json():
    update = normalize({"id": "rag-7", "status": "failed", "error": {"code": "E42"}})
    assert update.error_detail == '{"code": "E42"}'


def test_fallback_ref_used_for_poll_answers():
    update = normalize({"status": "processing"}, fallback_ref="rag-8")
    assert update.external_ref == "rag-8"


@pytest.mark.parametrize(
    "raw",
    [
        None,
        ["not", "an", "object"],
        "completed",
        {},
        {"status": "completed", "vector_ids": ["v"]},
        {"document_id": "rag-9"},
        {"document_id": "rag-9", "status": "   "},
        {"document": "rag-9", "status": "completed"},
    ],
)
def test_malformed_payloads(raw):
    with pytest.raises(MalformedPayloadError):
        normalize(raw)
