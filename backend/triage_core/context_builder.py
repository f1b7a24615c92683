from __future__ import annotations

from typing import Any, Iterable, Mapping

from .models import ContextChatTurn, PatientProfile, RawMedicalInputs, UnifiedMedicalContext

CONTEXT_TITLE = "### CONTEXTE MÉDICAL UNIFIÉ ###"
SECTION_HEADERS = (
    "#### 1. Symptômes écrits",
    "#### 2. Transcriptions vocales",
    "#### 3. Précisions rapides (Tags)",
    "#### 4. Imagerie médicale",
    "#### 5. Documents médicaux",
    "#### 6. Échange de précision (Chat IA)",
    "#### 7. Profil Patient",
)
IMAGE_ANALYSES_HEADER = "#### Analyse détaillée des images :"

_USER_ROLES = {"user", "patient"}
_ASSISTANT_ROLES = {"assistant", "ai"}

# Upstream sources disagree on naming; both spellings map to one field.
_PROFILE_KEYS = {
    "age": ("age",),
    "gender": ("gender", "sex"),
    "blood_group": ("blood_group", "bloodGroup"),
    "allergies": ("allergies",),
    "medical_history": ("medical_history", "medicalHistory"),
}


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clean_strings(values: Any) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    cleaned = []
    for value in values:
        text = _clean_text(value)
        if text:
            cleaned.append(text)
    return tuple(cleaned)


def _profile_value(raw: Mapping[str, Any], field: str) -> Any:
    for key in _PROFILE_KEYS[field]:
        value = raw.get(key)
        if value not in (None, "", []):
            return value
    return None


def normalize_profile(raw: Any) -> PatientProfile:
    if isinstance(raw, PatientProfile):
        return raw
    if not isinstance(raw, Mapping):
        return PatientProfile()
    age = _profile_value(raw, "age")
    try:
        age = int(age) if age is not None else None
    except (TypeError, ValueError):
        age = None
    allergies = _profile_value(raw, "allergies")
    if isinstance(allergies, str):
        allergies = allergies.split(",")
    return PatientProfile(
        age=age,
        gender=_clean_text(_profile_value(raw, "gender")),
        blood_group=_clean_text(_profile_value(raw, "blood_group")),
        allergies=_clean_strings(allergies),
        medical_history=_clean_text(_profile_value(raw, "medical_history")),
    )


def normalize_chat_turns(turns: Iterable[Any] | None) -> tuple[ContextChatTurn, ...]:
    normalized: list[ContextChatTurn] = []
    for turn in turns or ():
        if isinstance(turn, ContextChatTurn):
            normalized.append(turn)
            continue
        if not isinstance(turn, Mapping):
            continue
        if "sender_type" in turn or "message_text" in turn:
            raw_role, content = turn.get("sender_type"), turn.get("message_text")
        else:
            raw_role, content = turn.get("role"), turn.get("content")
        role = str(raw_role or "").strip().lower()
        text = _clean_text(content)
        if not text:
            continue
        if role in _USER_ROLES:
            normalized.append(ContextChatTurn(role="user", content=text))
        elif role in _ASSISTANT_ROLES:
            normalized.append(ContextChatTurn(role="assistant", content=text))
    return tuple(normalized)


def _render_profile(profile: PatientProfile) -> list[str]:
    lines = []
    if profile.age is not None:
        lines.append(f"- Âge : {profile.age} ans")
    if profile.gender:
        lines.append(f"- Sexe : {profile.gender}")
    if profile.blood_group:
        lines.append(f"- Groupe sanguin : {profile.blood_group}")
    if profile.allergies:
        lines.append(f"- Allergies : {', '.join(profile.allergies)}")
    if profile.medical_history:
        lines.append(f"- Antécédents : {profile.medical_history}")
    return lines


def render_combined_text(
    *,
    text_symptoms: str | None,
    voice_transcriptions: tuple[str, ...],
    selected_chips: tuple[str, ...],
    image_urls: tuple[str, ...],
    document_urls: tuple[str, ...],
    document_contents: tuple[str, ...],
    chat_history: tuple[ContextChatTurn, ...],
    patient_profile: PatientProfile,
) -> str:
    """Render the seven numbered sections; every header is always emitted."""
    blocks = [CONTEXT_TITLE]

    if text_symptoms:
        blocks.append(f'{SECTION_HEADERS[0]} (Texte libre) :\n"{text_symptoms}"')
    else:
        blocks.append(f"{SECTION_HEADERS[0]} : Aucun")

    if voice_transcriptions:
        lines = [f"{SECTION_HEADERS[1]} ({len(voice_transcriptions)} enregistrements) :"]
        lines.extend(f'- Enregistrement {idx} : "{text}"' for idx, text in enumerate(voice_transcriptions, start=1))
        blocks.append("\n".join(lines))
    else:
        blocks.append(f"{SECTION_HEADERS[1]} : Aucune")

    if selected_chips:
        blocks.append(f"{SECTION_HEADERS[2]} :\n" + "\n".join(f"- {chip}" for chip in selected_chips))
    else:
        blocks.append(f"{SECTION_HEADERS[2]} : Aucune")

    if image_urls:
        blocks.append(
            f"{SECTION_HEADERS[3]} :\n- {len(image_urls)} image(s) fournie(s)\n"
            "- Analyse des images disponible (jointe séparément au contexte technique)"
        )
    else:
        blocks.append(f"{SECTION_HEADERS[3]} : Aucune")

    if document_urls or document_contents:
        lines = [f"{SECTION_HEADERS[4]} :", f"- {len(document_urls) or len(document_contents)} document(s) fourni(s)"]
        if document_contents:
            lines.append("")
            lines.append("--- CONTENU EXTRAIT DES DOCUMENTS ---")
            lines.extend(document_contents)
            lines.append("-------------------------------------")
        else:
            lines.append("(Aucun contenu textuel extrait)")
        blocks.append("\n".join(lines))
    else:
        blocks.append(f"{SECTION_HEADERS[4]} : Aucun")

    if chat_history:
        lines = [f"{SECTION_HEADERS[5]} :"]
        for turn in chat_history:
            label = "PATIENT" if turn.role == "user" else "IA"
            lines.append(f"[{label}] : {turn.content}")
        blocks.append("\n".join(lines))
    else:
        blocks.append(f"{SECTION_HEADERS[5]} : Aucun")

    profile_lines = _render_profile(patient_profile)
    if profile_lines:
        blocks.append(f"{SECTION_HEADERS[6]} :\n" + "\n".join(profile_lines))
    else:
        blocks.append(f"{SECTION_HEADERS[6]} : Non renseigné")

    return "\n\n".join(blocks) + "\n"


def build_unified_context(raw: RawMedicalInputs) -> UnifiedMedicalContext:
    text_symptoms = _clean_text(raw.text_input)
    voice = _clean_strings(raw.voice_transcripts)
    chips = _clean_strings(raw.selected_chips)
    images = _clean_strings(raw.image_urls)
    documents = _clean_strings(raw.document_urls)
    contents = _clean_strings(raw.document_contents)
    chat = normalize_chat_turns(raw.chat_turns)
    profile = normalize_profile(raw.patient_profile)
    return UnifiedMedicalContext(
        text_symptoms=text_symptoms,
        voice_transcriptions=voice,
        selected_chips=chips,
        image_urls=images,
        document_urls=documents,
        document_contents=contents,
        chat_history=chat,
        patient_profile=profile,
        combined_text_block=render_combined_text(
            text_symptoms=text_symptoms,
            voice_transcriptions=voice,
            selected_chips=chips,
            image_urls=images,
            document_urls=documents,
            document_contents=contents,
            chat_history=chat,
            patient_profile=profile,
        ),
    )


def format_image_analyses(analyses: Iterable[str]) -> str:
    items = [text for text in (_clean_text(value) for value in analyses) if text]
    if not items:
        return ""
    return IMAGE_ANALYSES_HEADER + "\n" + "\n\n".join(items)


def patient_answers(turns: Iterable[Any]) -> str:
    return "\n\n---\n\n".join(turn.content for turn in normalize_chat_turns(turns) if turn.role == "user")
