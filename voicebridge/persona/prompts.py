"""Persona definitions and instruction templates.

A persona is a named set of template variables plus two templates
(context and behaviour). Instructions are rendered once per call from the
call's persona type and language.
"""

import re
from dataclasses import dataclass, field

_VARIABLE = re.compile(r"\{\{(\w+)\}\}")


@dataclass(frozen=True)
class Persona:
    type: str
    name: str
    role: str
    company: str
    tone: str
    context_template: str
    instructions_template: str
    variables: dict[str, str] = field(default_factory=dict)
    # None uses the configured default voice
    voice: str | None = None

    def template_variables(self) -> dict[str, str]:
        return {
            "name": self.name,
            "role": self.role,
            "company": self.company,
            "tone": self.tone,
            **self.variables,
        }


FALLBACK_PERSONA = Persona(
    type="fallback_assistant",
    name="Assistant",
    role="Customer Service Representative",
    company="Support Team",
    tone="professional",
    context_template=(
        "You are {{name}}, a {{role}} from {{company}}. "
        "Please assist the customer professionally."
    ),
    instructions_template=(
        "Be helpful, clear, and {{tone}} in all interactions. "
        "This is a phone call: keep every reply to one or two short sentences, "
        "never use markdown or lists, and spell numbers out as words. "
        "Greet the caller briefly when the call starts."
    ),
)

PERSONAS: dict[str, Persona] = {
    FALLBACK_PERSONA.type: FALLBACK_PERSONA,
    "reminder_assistant": Persona(
        type="reminder_assistant",
        name="Maya",
        role="personal assistant",
        company="{{company_name}}",
        tone="friendly",
        context_template="You are {{name}}, a {{role}} working for {{company}}.",
        instructions_template=(
            "Be warm and {{tone}}. Offer to set reminders with remindMeLater, "
            "send follow-up texts with sendSms, and use escalateItHigher when "
            "the caller asks for a manager or the issue is urgent."
        ),
        variables={"company_name": "Support Team"},
        voice="shimmer",
    ),
}


def substitute_variables(template: str, variables: dict[str, str]) -> str:
    """Replace ``{{key}}`` placeholders; unknown keys are left untouched."""
    return _VARIABLE.sub(lambda m: str(variables.get(m.group(1)) or m.group(0)), template)


def get_persona(persona_type: str | None) -> Persona:
    return PERSONAS.get(persona_type or "", FALLBACK_PERSONA)


def resolve_voice(persona_type: str | None, default: str) -> str:
    return get_persona(persona_type).voice or default


def build_instructions(language: str, persona_type: str | None = None) -> str:
    """Render the full instruction text for a call."""
    persona = get_persona(persona_type)
    variables = persona.template_variables()
    # Company may itself be templated
    variables["company"] = substitute_variables(persona.company, variables)
    context = substitute_variables(persona.context_template, variables)
    behaviour = substitute_variables(persona.instructions_template, variables)
    return f"{context}\n\n{behaviour}\n\nAlways speak {language.capitalize()}."
