from __future__ import annotations

from datetime import date

from triage_core.context_builder import (
    CONTEXT_TITLE,
    SECTION_HEADERS,
    build_unified_context,
    format_image_analyses,
    normalize_chat_turns,
    normalize_profile,
    patient_answers,
)
from triage_core.models import PatientProfile, RawMedicalInputs
from triage_core.session_data import age_from_birth_date


def _full_inputs() -> RawMedicalInputs:
    return RawMedicalInputs(
        text_input="  J'ai une toux sèche depuis 5 jours  ",
        voice_transcripts=["La toux est pire la nuit", "  "],
        selected_chips=["Fièvre", "Fatigue"],
        image_urls=["https://cdn.example/gorge.jpg"],
        document_urls=["https://cdn.example/bilan.pdf"],
        document_contents=["=== DOCUMENT 1 (bilan.pdf) ===\n[Page 1] CRP 18 mg/L\n=================="],
        chat_turns=[
            {"sender_type": "ai", "message_text": "Avez-vous de la fièvre ?"},
            {"sender_type": "patient", "message_text": "Oui, 38.2 hier soir"},
        ],
        patient_profile={"age": "34", "sex": "F", "bloodGroup": "O+", "allergies": "pénicilline, pollen"},
    )


def test_build_is_byte_identical_for_the_same_inputs():
    raw = _full_inputs()
    first = build_unified_context(raw)
    second = build_unified_context(raw)

    assert first.combined_text_block == second.combined_text_block
    assert first == second


def test_every_section_header_is_present_even_without_data():
    empty = build_unified_context(RawMedicalInputs())
    full = build_unified_context(_full_inputs())

    for header in SECTION_HEADERS:
        assert header in empty.combined_text_block
        assert header in full.combined_text_block

    assert empty.combined_text_block.startswith(CONTEXT_TITLE)
    assert "#### 1. Symptômes écrits : Aucun" in empty.combined_text_block
    assert "#### 6. Échange de précision (Chat IA) : Aucun" in empty.combined_text_block
    assert "#### 7. Profil Patient : Non renseigné" in empty.combined_text_block
    assert empty.combined_text_block.endswith("\n")


def test_sections_are_rendered_in_fixed_order_with_french_labels():
    block = build_unified_context(_full_inputs()).combined_text_block

    positions = [block.index(header) for header in SECTION_HEADERS]
    assert positions == sorted(positions)

    assert '#### 1. Symptômes écrits (Texte libre) :\n"J\'ai une toux sèche depuis 5 jours"' in block
    assert "#### 2. Transcriptions vocales (1 enregistrements) :" in block
    assert '- Enregistrement 1 : "La toux est pire la nuit"' in block
    assert "- Fièvre\n- Fatigue" in block
    assert "- 1 image(s) fournie(s)" in block
    assert "--- CONTENU EXTRAIT DES DOCUMENTS ---\n=== DOCUMENT 1 (bilan.pdf) ===" in block
    assert "[IA] : Avez-vous de la fièvre ?\n[PATIENT] : Oui, 38.2 hier soir" in block
    assert "- Âge : 34 ans" in block
    assert "- Allergies : pénicilline, pollen" in block


def test_documents_without_extracted_text_are_still_counted():
    context = build_unified_context(RawMedicalInputs(document_urls=["a.pdf", "b.docx"]))

    assert "- 2 document(s) fourni(s)\n(Aucun contenu textuel extrait)" in context.combined_text_block


def test_profile_normalisation_accepts_both_spellings():
    snake = normalize_profile({"gender": "M", "blood_group": "A-", "medical_history": "Asthme"})
    camel = normalize_profile({"sex": "M", "bloodGroup": "A-", "medicalHistory": "Asthme"})

    assert snake == camel
    assert normalize_profile({"age": "unknown"}).age is None
    assert normalize_profile(None) == PatientProfile()
    assert normalize_profile({}) == PatientProfile()


def test_chat_turns_accept_store_rows_and_role_content_pairs():
    turns = normalize_chat_turns(
        [
            {"role": "assistant", "content": "Depuis quand ?"},
            {"sender_type": "patient", "message_text": "Trois jours"},
            {"role": "system", "content": "ignored"},
            {"role": "user", "content": "   "},
            "not a turn",
        ]
    )

    assert [(turn.role, turn.content) for turn in turns] == [
        ("assistant", "Depuis quand ?"),
        ("user", "Trois jours"),
    ]


def test_patient_answers_keep_only_patient_turns():
    answers = patient_answers(
        [
            {"sender_type": "ai", "message_text": "Question 1"},
            {"sender_type": "patient", "message_text": "Réponse 1"},
            {"sender_type": "ai", "message_text": "Question 2"},
            {"sender_type": "patient", "message_text": "Réponse 2"},
        ]
    )

    assert answers == "Réponse 1\n\n---\n\nRéponse 2"


def test_image_analyses_block_is_empty_without_descriptions():
    assert format_image_analyses([]) == ""
    assert format_image_analyses(["", "Image 1: rougeur"]) == "#### Analyse détaillée des images :\nImage 1: rougeur"


def test_age_is_computed_from_birth_date():
    today = date(2026, 3, 15)

    assert age_from_birth_date("1990-03-15", today) == 36
    assert age_from_birth_date("1990-03-16", today) == 35
    assert age_from_birth_date(None, today) is None
    assert age_from_birth_date("2030-01-01", today) is None


def test_cough_scenario_renders_inputs_in_order():
    raw = RawMedicalInputs(
        text_input="Toux sèche depuis 5 jours",
        selected_chips=["fièvre légère"],
        document_urls=["https://cdn.example/crp.pdf"],
        document_contents=["=== DOCUMENT 1 (crp.pdf) ===\n[Page 1] CRP 45 mg/L\n=================="],
        chat_turns=[
            {"sender_type": "patient", "message_text": "Oui, j'ai de la fièvre"},
            {"sender_type": "ai", "message_text": "Depuis quand ?"},
        ],
    )

    block = build_unified_context(raw).combined_text_block
    needles = ["Toux sèche depuis 5 jours", "fièvre légère", "CRP 45 mg/L", "[PATIENT] : Oui, j'ai de la fièvre"]

    positions = [block.index(needle) for needle in needles]
    assert positions == sorted(positions)
    assert "#### 2. Transcriptions vocales : Aucune" in block
    assert "#### 4. Imagerie médicale : Aucune" in block
