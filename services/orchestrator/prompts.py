from __future__ import annotations

import re
from typing import Sequence

from shared.contracts.models import ChatTurn, Medication, PatientContext


DETAIL_REQUEST_RE = re.compile(
    r"\b(yes|sure|please|tell me more|more|details|detailed|expand|elaborate|explain more|go on|continue)\b"
)
DETAIL_OFFER_RE = re.compile(r"would you like more detailed information", re.I)
HISTORY_WINDOW = 5


def medication_list(medications: Sequence[Medication]) -> str:
    return ", ".join(f"{m.name} {m.dosage}" if m.dosage else m.name for m in medications)


def _listed(values: Sequence[str], empty: str = "none reported") -> str:
    cleaned = [v.strip() for v in values if v and v.strip()]
    return ", ".join(cleaned) if cleaned else empty


def interaction_prompt(medications: Sequence[Medication], patient: PatientContext) -> str:
    weight = f"{patient.weight:g}kg" if patient.weight else "not provided"
    return (
        "You are a medical safety assistant. Analyze medication interactions and provide safety "
        "information. Always err on the side of caution.\n\n"
        f"Medications: {medication_list(medications)}\n\n"
        "Patient Profile:\n"
        f"Age: {patient.age or 'not provided'}\n"
        f"Weight: {weight}\n"
        f"Allergies: {_listed(patient.allergies)}\n"
        f"Medical Conditions: {_listed(patient.conditions)}\n\n"
        "Check for: drug-drug interactions, drug-allergy concerns, age/weight warnings, "
        "condition-related concerns.\n\n"
        "Return ONLY valid JSON:\n"
        '{"interactions": [{"drug1": "...", "drug2": "...", "severity": "low|moderate|high|critical", '
        '"description": "..."}], "warnings": ["..."], "safe": true/false}\n\n'
        "If no interactions found, return empty interactions array and safe: true."
    )


def medication_info_prompt(name: str) -> str:
    return (
        f'You are a medical information assistant. Provide detailed information about the medication: "{name}".\n\n'
        "Return ONLY valid JSON with these fields:\n"
        '{"generic_name": "... or null", "dosage": "... or null", "frequency": "... or null", '
        '"description": "...", "category": "otc" or "prescription" or "supplement", "is_prescription": true/false}\n\n'
        "If information is not available or uncertain, use null for that field."
    )


def profile_summary(patient: PatientContext) -> str:
    lines = [
        "Patient Profile:",
        f"- Name: {patient.full_name or 'there'}",
        f"- Age: {f'{patient.age} years old' if patient.age else 'unknown'}",
        f"- Gender: {patient.gender or 'not specified'}",
    ]
    physical = []
    if patient.height:
        physical.append(f"Height: {patient.height:g}cm")
    if patient.weight:
        physical.append(f"Weight: {patient.weight:g}kg")
    if patient.bmi is not None:
        physical.append(f"BMI: {patient.bmi}")
    if physical:
        lines.append(f"- Physical: {', '.join(physical)}")

    lines.append(f"- Allergies: {_listed(patient.allergies, 'none')}")
    lines.append(f"- Medical Conditions: {_listed(patient.conditions, 'none')}")

    lifestyle = []
    if patient.smoking is not None:
        lifestyle.append(f"Smoking: {'Yes' if patient.smoking else 'No'}")
    if patient.alcohol_use:
        lifestyle.append(f"Alcohol: {patient.alcohol_use}")
    if lifestyle:
        lines.append(f"- Lifestyle: {', '.join(lifestyle)}")

    biometric = []
    if patient.blood_type:
        biometric.append(f"Blood Type: {patient.blood_type}")
    if patient.rh_factor:
        biometric.append(f"RH Factor: {patient.rh_factor}")
    if biometric:
        lines.append(f"- Biometric: {', '.join(biometric)}")

    if patient.medication_history:
        lines.append(f"- Past Medications: {_listed(patient.medication_history)}")
    if patient.family_medical_history:
        lines.append(f"- Family Medical History: {_listed(patient.family_medical_history)}")
    return "\n".join(lines)


def wants_detail(turns: Sequence[ChatTurn]) -> bool:
    """True when the user accepts the assistant's offer of more detail."""
    if len(turns) < 2:
        return False
    asked = DETAIL_REQUEST_RE.search(turns[-1].content.lower()) is not None
    offered = DETAIL_OFFER_RE.search(turns[-2].content) is not None
    return asked and offered


def chat_system_prompt(
    medications: Sequence[Medication],
    patient: PatientContext,
    history: Sequence[ChatTurn] = (),
    detailed: bool = False,
) -> str:
    name = patient.full_name or "there"
    meds = (
        f"Current medications: {medication_list(medications)}"
        if medications
        else "No medications currently listed"
    )
    recent = ""
    if history:
        recent = "\n\nRecent Conversation:\n" + "\n".join(
            f"{'User' if turn.role.value == 'user' else 'You'}: {turn.content}"
            for turn in history[-HISTORY_WINDOW:]
        )
    context = f"{profile_summary(patient)}\n{meds}{recent}"

    if detailed:
        return (
            f"You are {name}'s personal AI health assistant. Provide detailed information about the "
            f"previous topic.\n\n{context}\n\n"
            "Use the patient's complete profile to provide personalized, context-aware advice. "
            "Provide a comprehensive answer with context, examples, warnings, tips, and when to "
            "consult healthcare professionals."
        )

    return (
        f"You are {name}'s personal AI health assistant. Answer questions about medications, side "
        f"effects, interactions, and health advice tailored to their specific profile.\n\n{context}\n\n"
        "ADDING MEDICATIONS:\n"
        "When the user wants to add a medication, respond with a friendly message like "
        '"I\'ll help you add [medication name] to your list." and include this JSON at the end of '
        'your response: {"action": "add_medication", "medication": {"name": "Medication Name", '
        '"dosage": "...", "frequency": "...", "description": "...", "category": "otc|prescription|supplement"}}\n'
        "Use null for anything the user did not mention.\n\n"
        "RESPONSE FORMAT:\n"
        "- Keep initial responses SHORT (2-3 sentences)\n"
        '- End with: "Would you like more detailed information about this?" (unless adding medication)\n'
        "- Only include medication JSON when the user wants to add a medication\n"
        "- Always remind users to consult healthcare professionals for serious concerns."
    )
