"""
Prompt Builder — Arma el system prompt a partir de agente, persona y conocimiento.

Función pura y determinista. Secciones, en orden fijo:
1. Identidad (persona, o agente, o genérica)
2. Tono                     ┐
3. Guía de estilo           │
4. Saludo                   │ solo con persona
5. Restricciones            │
6. Política de fallback     │
7. Reglas de escalamiento   ┘
8. Guía de captura de leads (siempre)
9. Conocimiento relevante (solo si hay chunks)

Las secciones cuyo campo está vacío se omiten; nunca se reordenan.
"""

from typing import List, Optional, Sequence

from agent.domain import Agent, FallbackPolicy, KnowledgeChunk, Persona, PersonaTone

GENERIC_IDENTITY = "You are a helpful AI assistant."

TONE_INSTRUCTIONS = {
    PersonaTone.PROFESSIONAL.value: "Maintain a professional and courteous tone in all interactions.",
    PersonaTone.FRIENDLY.value: "Be warm, friendly, and approachable in your responses.",
    PersonaTone.CASUAL.value: "Keep your responses casual and conversational.",
    PersonaTone.FORMAL.value: "Use formal language and maintain proper etiquette.",
}

FALLBACK_INSTRUCTIONS = {
    FallbackPolicy.APOLOGIZE.value: (
        "If you don't know something, apologize politely and offer to help in another way."
    ),
    FallbackPolicy.ESCALATE.value: (
        "If you cannot help with a request, let the user know you'll escalate to a human agent."
    ),
    FallbackPolicy.RETRY.value: (
        "If you don't understand, ask clarifying questions to better assist the user."
    ),
    FallbackPolicy.TRANSFER.value: (
        "If the request is beyond your capabilities, offer to transfer to a human representative."
    ),
}

LEAD_CAPTURE_GUIDELINES = """## Lead Capture Guidelines:
- If the user asks for a quote, appointment, pricing, availability, or follow-up, politely ask: "I can help with that. Would you like to leave an email or phone number so we can follow up?"
- Never demand contact information; only ask once if the user declines or ignores the request.
- Do not collect sensitive data beyond basic contact info (email, phone, name).
- If the user provides their contact info naturally, acknowledge it briefly and continue helping them."""

KNOWLEDGE_HEADING = "## Relevant Knowledge:"
KNOWLEDGE_SEPARATOR = "\n---\n"
KNOWLEDGE_USAGE_HINT = "Use the above knowledge to answer user questions when relevant."


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def tone_instruction(tone: Optional[str]) -> str:
    return TONE_INSTRUCTIONS.get(tone or "", TONE_INSTRUCTIONS[PersonaTone.PROFESSIONAL.value])


def fallback_instruction(policy: Optional[str]) -> str:
    return FALLBACK_INSTRUCTIONS.get(
        policy or "", FALLBACK_INSTRUCTIONS[FallbackPolicy.APOLOGIZE.value]
    )


def _agent_sections(agent: Optional[Agent]) -> List[str]:
    if agent is None:
        return [GENERIC_IDENTITY]

    sections = [f"You are an AI assistant for {agent.name}."]
    if _present(agent.goals):
        sections.append(f"Your goals: {agent.goals}")
    if _present(agent.business_domain) and agent.business_domain != "other":
        sections.append(f"You specialize in {agent.business_domain}.")
    return sections


def _persona_sections(persona: Persona) -> List[str]:
    if _present(persona.role_title):
        sections = [f"You are {persona.name}, {persona.role_title}."]
    else:
        sections = [f"You are {persona.name}."]

    sections.append(tone_instruction(persona.tone))

    if _present(persona.style_notes):
        sections.append(f"Style guidelines: {persona.style_notes}")

    if _present(persona.greeting_script):
        sections.append(f'When greeting users, use: "{persona.greeting_script}"')

    restrictions = [item for item in persona.do_not_do if _present(item)]
    if restrictions:
        sections.append("Restrictions - Do NOT:\n- " + "\n- ".join(restrictions))

    sections.append(fallback_instruction(persona.fallback_policy))

    if _present(persona.escalation_rules):
        sections.append(f"Escalation rules: {persona.escalation_rules}")

    return sections


def format_knowledge(chunks: Sequence[KnowledgeChunk]) -> str:
    return KNOWLEDGE_HEADING + "\n" + KNOWLEDGE_SEPARATOR.join(c.content for c in chunks)


def build_system_prompt(
    agent: Optional[Agent],
    persona: Optional[Persona] = None,
    chunks: Sequence[KnowledgeChunk] = (),
) -> str:
    """
    Construye el system prompt.

    Con persona, la identidad de la persona reemplaza a la del agente
    (objetivos y dominio del agente no se incluyen).
    """
    if persona is not None:
        sections = _persona_sections(persona)
    else:
        sections = _agent_sections(agent)

    sections.append(LEAD_CAPTURE_GUIDELINES)

    if chunks:
        sections.append(format_knowledge(chunks))
        sections.append(KNOWLEDGE_USAGE_HINT)

    return "\n\n".join(sections)
