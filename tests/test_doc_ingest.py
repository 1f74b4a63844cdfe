import pytest

from src.realty_assistant.services import doc_ingest


@pytest.mark.parametrize("n", [0, 1, 799, 800, 801, 1000, 1001, 1800, 2500, 5432])
def test_chunk_prefixes_rebuild_text(n):
    text = "".join(chr(ord("a") + (i % 26)) for i in range(n))
    chunks = doc_ingest.chunk_text(text)

    rebuilt = "".join(c.content[:800] for c in chunks)
    assert rebuilt == text
    if n:
        assert chunks[-1].end_offset == n
    else:
        assert chunks == []


def test_chunks_overlap_and_are_indexed():
    text = "x" * 300 + "".join(str(i % 10) for i in range(2700))
    chunks = doc_ingest.chunk_text(text)

    assert [c.index for c in chunks] == list(range(len(chunks)))
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_offset == prev.start_offset + 800
        if len(prev.content) == 1000:
            assert prev.content[-200:] == nxt.content[:200]
    for c in chunks:
        assert text[c.start_offset:c.end_offset] == c.content
        assert len(c.content) <= 1000


def test_chunk_text_rejects_bad_overlap():
    with pytest.raises(ValueError):
        doc_ingest.chunk_text("abc", chunk_size=100, overlap=100)


def test_parse_pdf_with_stub_reader(monkeypatch):
    class StubPage:
        def __init__(self, text):
            self._t = text

        def extract_text(self):
            return self._t

    class StubReader:
        def __init__(self, _bio):
            self.pages = [StubPage("Lease term: 5 years"), StubPage(""), StubPage("Rent: $4,000")]

    monkeypatch.setattr(doc_ingest, "PdfReader", StubReader)
    text = doc_ingest.parse_text_from_bytes("lease.pdf", "application/pdf", b"%PDF-1.7")
    assert text == "Lease term: 5 years\nRent: $4,000"


def test_parse_docx_with_stub_document(monkeypatch):
    class StubPara:
        def __init__(self, text):
            self.text = text

    class StubDoc:
        def __init__(self, _bio):
            self.paragraphs = [StubPara("Tenant: Acme"), StubPara("  "), StubPara("Suite 400")]

    monkeypatch.setattr(doc_ingest, "Document", StubDoc)
    ctype = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    assert doc_ingest.parse_text_from_bytes("memo.docx", ctype, b"PK") == "Tenant: Acme\nSuite 400"


def test_parser_failure_raises_extraction_error(monkeypatch):
    class BrokenReader:
        def __init__(self, _bio):
            raise ValueError("EOF marker not found")

    monkeypatch.setattr(doc_ingest, "PdfReader", BrokenReader)
    with pytest.raises(doc_ingest.ExtractionError):
        doc_ingest.parse_text_from_bytes("bad.pdf", "application/pdf", b"not a pdf")


def test_plain_text_decodes_and_unknown_types_raise():
    assert doc_ingest.parse_text_from_bytes("notes.txt", "text/plain", "café".encode("utf-8")) == "café"
    with pytest.raises(doc_ingest.ExtractionError):
        doc_ingest.parse_text_from_bytes("photo.png", "image/png", b"\x89PNG")
