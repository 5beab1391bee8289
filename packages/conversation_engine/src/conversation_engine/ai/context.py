"""
Context Builder

Assembles what the assistant sees for one inbound message: business
knowledge, recent conversation history, tone and language instructions.
"""

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from conversation_engine.persistence.models import MessageDirection
from conversation_engine.persistence.repo import ConversationRepository

logger = logging.getLogger(__name__)

NO_KNOWLEDGE_MARKER = "No knowledge base entries yet."
DEFAULT_PERSONALITY = "friendly"

LANGUAGE_INSTRUCTIONS = {
    "ar": "Always answer in Arabic.",
    "en": "Always answer in English.",
}
AUTO_LANGUAGE_INSTRUCTION = "Answer in the same language the customer writes in (Arabic or English)."

SYSTEM_TEMPLATE = """You are the customer service assistant of "{business_name}".

Personality: {personality}. Keep this tone in every answer.
{language_instruction}

Business knowledge (answer from it, do not invent facts):
{knowledge}

Rules:
- Be concise and helpful.
- If the customer wants to buy, collect: product, quantity, delivery address and phone number. Ask for whatever is missing.
- Only set intent to "order" once you know at least the product and the quantity.
- If the customer complains, apologize and set intent to "complaint".

Reply ONLY with a JSON object, no other text:
{{
  "reply": "your message to the customer",
  "intent": "question" | "order" | "complaint",
  "orderData": {{"product": "...", "quantity": 1, "address": "...", "phone": "..."}} or null
}}"""


@dataclass
class Prompt:
    """Everything needed for one inference call."""

    system: str
    history: list[dict[str, str]]
    user_message: str
    temperature: float | None = None
    model: str | None = None
    language: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def to_messages(self) -> list[dict[str, str]]:
        """Chat-completions message list: system, history (oldest first), current message."""
        return [
            {"role": "system", "content": self.system},
            *self.history,
            {"role": "user", "content": self.user_message},
        ]


def format_knowledge(entries: list[tuple[str, str]]) -> str:
    """Render (question, answer) pairs as Q:/A: blocks separated by blank lines."""
    if not entries:
        return NO_KNOWLEDGE_MARKER
    return "\n\n".join(f"Q: {question}\nA: {answer}" for question, answer in entries)


class ContextBuilder:
    """Builds prompts from persisted business data."""

    def __init__(self, history_limit: int = 10):
        self.history_limit = history_limit

    def build(
        self,
        db: Session,
        business_id: UUID,
        customer_id: UUID,
        user_message: str,
        current_message_id: int | None = None,
    ) -> Prompt:
        """
        Build the prompt for a customer's message.

        Args:
            db: Database session
            business_id: Business UUID
            customer_id: Customer UUID
            user_message: Text being answered
            current_message_id: Stored id of that text, left out of history

        Returns:
            Prompt for the inference gateway
        """
        repo = ConversationRepository(db)

        business = repo.get_business(business_id)
        settings = repo.get_ai_settings(business_id)
        knowledge = [(entry.question, entry.answer) for entry in repo.list_knowledge(business_id)]

        recent = repo.get_recent_messages(
            business_id,
            customer_id,
            limit=self.history_limit,
            exclude_message_id=current_message_id,
        )
        history = [
            {
                "role": "user" if message.direction == MessageDirection.INCOMING.value else "assistant",
                "content": message.content,
            }
            for message in reversed(recent)
        ]

        language = settings.language if settings else None
        system = SYSTEM_TEMPLATE.format(
            business_name=business.name if business else "our store",
            personality=(settings.personality if settings and settings.personality else DEFAULT_PERSONALITY),
            language_instruction=LANGUAGE_INSTRUCTIONS.get(language, AUTO_LANGUAGE_INSTRUCTION),
            knowledge=format_knowledge(knowledge),
        )

        logger.debug(
            "Built prompt",
            extra={
                "business_id": str(business_id),
                "customer_id": str(customer_id),
                "history": len(history),
                "knowledge_entries": len(knowledge),
            },
        )

        return Prompt(
            system=system,
            history=history,
            user_message=user_message,
            temperature=settings.temperature if settings else None,
            model=settings.model if settings else None,
            language=language,
            metadata={"business_id": str(business_id), "customer_id": str(customer_id)},
        )
