"""Prompt assembly for classic (trained model) and pro (reference image) generation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional


_GENDER_TERMS = {
    "female": "woman",
    "woman": "woman",
    "male": "man",
    "man": "man",
    "non-binary": "person",
    "nonbinary": "person",
}
_GENDER_WORD_RE = re.compile(r"\b(woman|man|person)\b", re.IGNORECASE)

_POST_TYPE_SCENES = {
    "portrait": "close-up editorial portrait, soft natural light, shallow depth of field",
    "lifestyle": "candid lifestyle moment, natural environment, relaxed posture",
    "flatlay": "overhead flatlay composition, styled props, clean negative space",
    "quote": "minimal background with space for text overlay",
}


@dataclass
class PromptContext:
    """Everything the assembler needs to know about one post."""

    mode: str = "classic"
    post_type: str = "portrait"
    stored_prompt: Optional[str] = None
    caption: Optional[str] = None
    brand_vibe: Optional[str] = None
    color_palette: Optional[str] = None
    trigger_word: Optional[str] = None
    gender: Optional[str] = None
    ethnicity: Optional[str] = None
    reference_count: int = 0
    edit_instruction: Optional[str] = None
    scene_notes: List[str] = field(default_factory=list)


def extract_version_id(full_version_id: Optional[str]) -> str:
    """Return the version hash from ``owner/model:hash`` or a bare hash."""
    if not full_version_id:
        return ""
    return str(full_version_id).split(":")[-1]


def gender_term(gender: Optional[str]) -> str:
    if not gender:
        return "person"
    return _GENDER_TERMS.get(str(gender).strip().lower(), "person")


def ensure_trigger_word_prefix(prompt: str, trigger_word: Optional[str]) -> str:
    if not prompt or not trigger_word:
        return prompt
    if prompt.strip().lower().startswith(trigger_word.lower()):
        return prompt
    return f"{trigger_word}, {prompt}"


def ensure_gender_in_prompt(
    prompt: str,
    trigger_word: Optional[str],
    gender: Optional[str],
    ethnicity: Optional[str] = None,
) -> str:
    """Insert the subject's gender term right after the trigger word when missing."""
    if not prompt or not trigger_word or not gender:
        return prompt

    term = f"{ethnicity} {gender}" if ethnicity and ethnicity != "Other" else gender
    if not prompt.strip().lower().startswith(trigger_word.lower()):
        return f"{trigger_word}, {term}, {prompt}"

    after_trigger = prompt.strip()[len(trigger_word):].strip()
    cleaned = re.sub(r"^,\s*", "", after_trigger).strip()
    cleaned_lower = cleaned.lower()
    first_segment = cleaned.split(",")[0].strip()

    has_gender = any(
        cleaned_lower.startswith(candidate.lower() + sep)
        for candidate in (gender, term)
        for sep in (",", " ")
    ) or bool(_GENDER_WORD_RE.search(first_segment))
    if has_gender:
        return prompt
    if not cleaned:
        return f"{trigger_word}, {term}"
    return f"{trigger_word}, {term}, {cleaned}"


def _compose_scene(context: PromptContext) -> str:
    parts = [_POST_TYPE_SCENES.get(context.post_type, _POST_TYPE_SCENES["portrait"])]
    if context.brand_vibe:
        parts.append(f"{context.brand_vibe} aesthetic")
    if context.color_palette:
        parts.append(f"color palette of {context.color_palette}")
    if context.caption:
        parts.append(f"mood inspired by: {context.caption.strip()[:200]}")
    parts.extend(note for note in context.scene_notes if note)
    return ", ".join(parts)


def _assemble_classic(context: PromptContext) -> str:
    prompt = (context.stored_prompt or "").strip() or _compose_scene(context)
    if context.edit_instruction:
        prompt = f"{prompt}, {context.edit_instruction.strip()}"
    if context.trigger_word:
        prompt = ensure_trigger_word_prefix(prompt, context.trigger_word)
        prompt = ensure_gender_in_prompt(
            prompt,
            context.trigger_word,
            gender_term(context.gender),
            context.ethnicity,
        )
    return prompt


def _assemble_pro(context: PromptContext) -> str:
    count = max(int(context.reference_count), 1)
    subject = gender_term(context.gender)
    lines = [
        f"Use the {count} reference image{'s' if count != 1 else ''} in order as the identity of the same {subject}.",
        "Keep facial features, skin tone and hair consistent with the references.",
        f"Scene: {(context.stored_prompt or '').strip() or _compose_scene(context)}.",
    ]
    if context.edit_instruction:
        lines.append(f"Edit: {context.edit_instruction.strip()}.")
    return " ".join(lines)


def assemble_prompt(context: PromptContext) -> str:
    """Build the final prompt text for one generation."""
    if context.mode == "pro":
        return _assemble_pro(context)
    return _assemble_classic(context)
