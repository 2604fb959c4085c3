"""
Prompt Builder
--------------
Turns persona, history and retrieved memory into chat messages.

Layout:
1. system  - persona role-play instructions
2. system  - remembered facts (only when there are any)
3. user    - recent history lines followed by the current message
"""

from typing import Dict, List, Optional, Sequence
import logging

from infra.database import Message, Persona, SenderKind

MAX_HISTORY_MESSAGES = 10

SYSTEM_TEMPLATE = """You are now playing {name} ({english_name}). Follow these rules strictly.

## Background
- Name: {name}
- English name: {english_name}
- Gender: {gender}
- Date of birth: {birth_date}
- Nationality: {nationality}
- Occupation: {occupation}
- Introduction: {introduction}

## Speaking style
{style_features}

## Conversation rules
1. Stay fully in character as {name}, using language that fits their identity and style
2. Answer naturally; avoid sounding mechanical or templated
3. Keep the conversation coherent and remember what the user told you earlier
4. Never reveal that you are an AI assistant
5. Keep replies short, the way people talk day to day
6. Emoji and catchphrases are fine when they suit the persona
7. Politely decline sensitive or inappropriate questions
8. Refer to your own work where it is relevant
9. Stay positive and show your personality

Begin the conversation as {name}."""

MEMORY_TEMPLATE = """As {name}, keep the following in mind and refer to it naturally:
- {memories}

These facts come from earlier conversations; weave them into your replies."""


class PromptBuilder:
    """Builds the ordered role/content list fed to generation."""

    def __init__(self, max_history: int = MAX_HISTORY_MESSAGES):
        self.max_history = max_history
        self._logger = logging.getLogger("starchat.memory.prompt")

    def build_system_prompt(self, persona: Persona) -> str:
        return SYSTEM_TEMPLATE.format(
            name=persona.name,
            english_name=persona.english_name,
            gender=persona.gender,
            birth_date=persona.birth_date,
            nationality=persona.nationality,
            occupation=persona.occupation,
            introduction=persona.introduction,
            style_features=persona.style_features,
        )

    def build_memory_prompt(self, persona: Persona, memories: Sequence[str]) -> str:
        """Empty string when there is nothing to remember."""
        if not memories:
            return ""
        return MEMORY_TEMPLATE.format(name=persona.name, memories="\n- ".join(memories))

    def build_user_prompt(self, history: Sequence[Message], current_message: str) -> str:
        lines = []
        for message in list(history)[-self.max_history:]:
            sender = "You" if message.sender_kind == SenderKind.STAR else "User"
            lines.append(f"{sender}: {message.content}")
        lines.append(f"User: {current_message}")
        return "\n".join(lines)

    def build_messages(
        self,
        persona: Persona,
        history: Sequence[Message],
        current_message: str,
        memories: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self.build_system_prompt(persona)}]

        memory_prompt = self.build_memory_prompt(persona, memories or [])
        if memory_prompt:
            messages.append({"role": "system", "content": memory_prompt})

        messages.append({"role": "user", "content": self.build_user_prompt(history, current_message)})

        self._logger.debug(f"Built prompt with {len(messages)} messages for {persona.name}")
        return messages
