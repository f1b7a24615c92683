from __future__ import annotations

import asyncio

from fakes import FakeFetcher, make_docx, make_pdf, run
from triage_tools import DocumentExtractor
from triage_tools.document_extractor import document_kind, label_document


def _extractor(fetcher: FakeFetcher, **timeouts: float) -> DocumentExtractor:
    return DocumentExtractor(
        fetcher,
        download_timeout=timeouts.get("download", 0.5),
        load_timeout=timeouts.get("load", 2.0),
        page_timeout=timeouts.get("page", 2.0),
    )


def test_pdf_pages_are_prefixed_with_their_number():
    ref = "https://cdn.example/files/bilan.pdf"
    extractor = _extractor(FakeFetcher({ref: make_pdf("CRP 18 mg/L", "Leucocytes 11000")}))

    text = run(extractor.extract(ref))

    assert text.startswith("[Page 1] ")
    assert "CRP 18" in text
    assert "[Page 2] " in text
    assert "Leucocytes" in text


def test_docx_paragraphs_are_joined():
    ref = "https://cdn.example/files/compte-rendu.docx"
    extractor = _extractor(FakeFetcher({ref: make_docx("Radiographie thoracique normale", "", "Pas d'épanchement")}))

    assert run(extractor.extract(ref)) == "Radiographie thoracique normale\nPas d'épanchement"


def test_unsupported_format_is_not_downloaded():
    fetcher = FakeFetcher()
    extractor = _extractor(fetcher)

    text = run(extractor.extract("https://cdn.example/files/scan.png"))

    assert text == "[Format non supporté pour extraction texte: scan.png] (Image ou autre)"
    assert fetcher.requested == []


def test_download_and_parse_failures_become_placeholders():
    broken = "https://cdn.example/files/broken.pdf"
    missing = "https://cdn.example/files/missing.pdf"
    extractor = _extractor(FakeFetcher({broken: b"this is not a pdf"}))

    assert run(extractor.extract(missing)).startswith("[Erreur de téléchargement pour missing.pdf: ")
    assert run(extractor.extract(broken)).startswith("[Erreur d'extraction pour broken.pdf: ")


def test_pdf_without_text_reports_it():
    ref = "https://cdn.example/files/blank.pdf"
    extractor = _extractor(FakeFetcher({ref: make_pdf("")}))

    assert run(extractor.extract(ref)) == "[Aucun texte extrait du fichier blank.pdf]"


def test_one_slow_document_does_not_sink_the_batch():
    fast_pdf = "https://cdn.example/files/fast.pdf"
    slow_pdf = "https://cdn.example/files/slow.pdf"
    fast_docx = "https://cdn.example/files/notes.docx"
    fetcher = FakeFetcher(
        {
            fast_pdf: make_pdf("Glycemie 0.95 g/L"),
            slow_pdf: make_pdf("never read"),
            fast_docx: make_docx("Tension 12/8"),
        },
        delays={slow_pdf: 5.0},
    )
    extractor = _extractor(fetcher, download=0.2)

    async def scenario():
        return await asyncio.wait_for(extractor.extract_all([fast_pdf, slow_pdf, fast_docx]), timeout=3.0)

    results = run(scenario())

    assert len(results) == 3
    assert results[0].startswith("=== DOCUMENT 1 (fast.pdf) ===")
    assert "Glycemie" in results[0]
    assert "[Erreur de téléchargement pour slow.pdf: document download timeout after 0.2s]" in results[1]
    assert results[2] == "=== DOCUMENT 3 (notes.docx) ===\nTension 12/8\n=================="


def test_empty_batch_returns_nothing():
    assert run(_extractor(FakeFetcher()).extract_all([])) == []


def test_document_kind_and_labels_use_the_object_name():
    assert document_kind("https://x.example/storage/v1/object/public/docs/a%20b.PDF") == "pdf"
    assert document_kind("docs/lettre.doc") == "docx"
    assert document_kind("docs/photo.jpeg") is None
    assert label_document(2, "https://x.example/docs/a%20b.pdf", "texte") == (
        "=== DOCUMENT 2 (a b.pdf) ===\ntexte\n=================="
    )
