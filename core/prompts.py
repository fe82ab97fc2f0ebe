"""
System prompt assembly for AI replies (retrieval-augmented).

Sections, in order: base persona, style directive, emoji switch, tenant
instructions, emotional-response directive, knowledge corpus, behavioural
constraints, channel note.
"""
from __future__ import annotations

from typing import Optional, Sequence

from database.models import AIConfigRow, KnowledgeDocRow
from models.schemas import ChannelType, PersonaStyle

DEFAULT_PERSONA = (
    "You are the customer assistant of this business. You answer customers "
    "who write to the business on messaging apps."
)

STYLE_DIRECTIVES = {
    PersonaStyle.PROFESSIONAL: "Tone: professional and precise. Courteous, no slang, no jokes.",
    PersonaStyle.FRIENDLY: "Tone: warm and friendly, like a helpful shop assistant who knows the customer.",
    PersonaStyle.EMPATHETIC: "Tone: empathetic and reassuring. Acknowledge feelings before giving answers.",
    PersonaStyle.FUNNY: "Tone: light and playful with gentle humour, while still answering the question.",
}

EMOJI_ON = "You may use a few relevant emojis."
EMOJI_OFF = "Do not use emojis."

EMOTION_DIRECTIVE = """EMOTIONAL INTELLIGENCE:
- Detect the customer's emotion from their wording (anger, joy, urgency, confusion).
- Anger: apologise briefly, stay calm, go straight to a solution.
- Joy: share the enthusiasm.
- Urgency: answer first, details after.
- Confusion: rephrase simply, one step at a time."""

CONSTRAINTS = """RULES:
- Never say or imply that you are an AI, a bot or a language model.
- Keep replies short: 1 to 3 sentences unless the customer asks for detail.
- Only state facts found in the knowledge base or the conversation. If you do not know, say a team member will follow up. Never invent prices, dates, stock or policies.
- Reply in the customer's language."""

CHANNEL_NOTES = {
    ChannelType.WHATSAPP: "CHANNEL: WhatsApp. Plain text, no markdown headings.",
    ChannelType.INSTAGRAM: "CHANNEL: Instagram Direct. Plain text, very short.",
    ChannelType.MESSENGER: "CHANNEL: Facebook Messenger. Plain text.",
}


def style_for(value: Optional[str]) -> PersonaStyle:
    try:
        return PersonaStyle((value or "").upper())
    except ValueError:
        return PersonaStyle.FRIENDLY


def knowledge_block(docs: Sequence[KnowledgeDocRow], char_limit: int = 20000) -> str:
    """Concatenate active docs, truncating once char_limit is reached."""
    parts: list[str] = []
    used = 0
    for doc in docs:
        content = (doc.content or "").strip()
        if not content:
            continue
        chunk = f"### {doc.source_name or 'Document'}\n{content}"
        remaining = char_limit - used
        if remaining <= 0:
            break
        if len(chunk) > remaining:
            chunk = chunk[:remaining].rstrip() + "\n[...]"
        parts.append(chunk)
        used += len(chunk)
    return "\n\n".join(parts)


def build_system_prompt(
    config: AIConfigRow,
    docs: Sequence[KnowledgeDocRow],
    channel: Optional[ChannelType] = None,
    knowledge_char_limit: int = 20000,
) -> str:
    sections = [
        (config.system_prompt or "").strip() or DEFAULT_PERSONA,
        STYLE_DIRECTIVES[style_for(config.persona_style)],
        EMOJI_ON if config.emoji_usage is not False else EMOJI_OFF,
    ]
    if config.system_instructions and config.system_instructions.strip():
        sections.append("BUSINESS INSTRUCTIONS:\n" + config.system_instructions.strip())
    sections.append(EMOTION_DIRECTIVE)

    corpus = knowledge_block(docs, knowledge_char_limit)
    if corpus:
        sections.append("KNOWLEDGE BASE:\n" + corpus)
    else:
        sections.append("KNOWLEDGE BASE: (empty) Do not answer factual questions about the business.")

    sections.append(CONSTRAINTS)
    if channel is not None:
        sections.append(CHANNEL_NOTES[channel])
    return "\n\n".join(sections)
