from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Protocol, Sequence

from .models import ContentType, DeliveryStatus, KanbanColumn, MessageDirection, OrderStatus, StatusUpdateMode

if TYPE_CHECKING:
    from .inbox_store import AutomationSettingsRecord, MessageRecord

DEFAULT_INSTRUCTIONS = "Eres un asistente de ventas amigable."
KNOWLEDGE_CHAR_LIMIT = 2000
KNOWLEDGE_TRUNCATION_MARKER = "\n...(más productos disponibles)"
REPLY_RULES = (
    "=== REGLAS ===\n"
    "- Responde en 2-5 líneas máximo\n"
    "- Máximo 2 preguntas por respuesta\n"
    "- Tono humano y cálido\n"
    "- Para enviar imagen usa: [IMAGEN: url]"
)
FOLLOW_UP_WINDOW_HOURS = 24
FOLLOW_UP_BATCH_LIMIT = 10

_IMAGE_DIRECTIVE = re.compile(r"\[IMAGEN:\s*(https?://[^\]]+)\]", re.IGNORECASE)

PURCHASE_INTENT_KEYWORDS = (
    "precio",
    "costo",
    "cuánto",
    "cuanto",
    "producto",
    "catálogo",
    "catalogo",
    "comprar",
    "pedir",
    "envío",
    "envio",
    "entrega",
    "disponible",
    "tienen",
    "hay",
    "busco",
    "quiero",
    "necesito",
    "promoción",
    "promocion",
    "descuento",
    "oferta",
    "stock",
    "venden",
    "modelo",
    "talla",
    "color",
    "pago",
    "contraentrega",
    "berberina",
    "magnesio",
    "vitamina",
    "suplemento",
    "cápsula",
    "capsula",
)

_STATUS_RANK: dict[str, int] = {"received": 0, "sent": 1, "delivered": 2, "read": 3}

_KANBAN_FLAGS: dict[str, dict[str, Any]] = {
    "nuevo": {"order_status": "none", "should_call": False, "needs_human_attention": False},
    "llamar": {"order_status": "none", "should_call": True, "needs_human_attention": False},
    "proceso": {"order_status": "pending", "needs_human_attention": False},
    "listo": {"order_status": "ready", "needs_human_attention": False},
    "entregado": {"order_status": "delivered", "needs_human_attention": False},
    "humano": {"needs_human_attention": True},
}


def should_apply_status(
    current: DeliveryStatus,
    incoming: DeliveryStatus,
    *,
    mode: StatusUpdateMode = "monotonic",
) -> bool:
    if mode == "overwrite":
        return current != incoming
    if current == "failed":
        return False
    if incoming == "failed":
        return current == "sent"
    current_rank = _STATUS_RANK.get(current)
    incoming_rank = _STATUS_RANK.get(incoming)
    if current_rank is None or incoming_rank is None:
        return False
    return incoming_rank > current_rank


@dataclass(frozen=True)
class ReplyEligibilityDecision:
    eligible: bool
    reason: str


def evaluate_reply_eligibility(
    *,
    direction: MessageDirection,
    automation_enabled: bool,
    conversation_automation_disabled: bool,
    needs_human_attention: bool,
) -> ReplyEligibilityDecision:
    if direction != "in":
        return ReplyEligibilityDecision(eligible=False, reason="not_inbound")
    if not automation_enabled:
        return ReplyEligibilityDecision(eligible=False, reason="automation_off")
    if conversation_automation_disabled:
        return ReplyEligibilityDecision(eligible=False, reason="conversation_automation_disabled")
    if needs_human_attention:
        return ReplyEligibilityDecision(eligible=False, reason="awaiting_human")
    return ReplyEligibilityDecision(eligible=True, reason="eligible")


class SupplementaryContextClassifier(Protocol):
    def should_include(self, text: str) -> bool: ...


class KeywordContextClassifier:
    def __init__(self, keywords: Iterable[str] = PURCHASE_INTENT_KEYWORDS) -> None:
        self._keywords = tuple(keyword.lower() for keyword in keywords if keyword.strip())

    def should_include(self, text: str) -> bool:
        normalized = text.lower()
        return any(keyword in normalized for keyword in self._keywords)


def truncate_text(value: str, limit: int) -> str:
    if limit <= 0:
        return ""
    return value[:limit]


def truncate_knowledge(knowledge: str) -> str:
    if len(knowledge) <= KNOWLEDGE_CHAR_LIMIT:
        return knowledge
    return knowledge[:KNOWLEDGE_CHAR_LIMIT] + KNOWLEDGE_TRUNCATION_MARKER


def summarize_message_content(content_type: ContentType | str, body: str | None) -> str:
    if content_type == "text" and body:
        return body
    return f"[{content_type}]"


@dataclass(frozen=True)
class ReplyContext:
    instruction: str
    system_prompt: str
    messages: list[dict[str, str]] = field(default_factory=list)
    knowledge_included: bool = False


def build_reply_context(
    *,
    settings: AutomationSettingsRecord,
    instruction_char_budget: int,
    trigger_text: str,
    history: Sequence[MessageRecord],
    learned_rules: Sequence[str] = (),
    classifier: SupplementaryContextClassifier | None = None,
) -> ReplyContext:
    instruction = truncate_text(settings.instructions or DEFAULT_INSTRUCTIONS, instruction_char_budget)

    sections = [instruction, REPLY_RULES]
    knowledge = settings.knowledge.strip()
    active_classifier = classifier or KeywordContextClassifier()
    knowledge_included = bool(knowledge) and active_classifier.should_include(trigger_text)
    if knowledge_included:
        sections.append("=== CATÁLOGO ===\n" + truncate_knowledge(knowledge))
    if settings.learning_enabled and learned_rules:
        sections.append("=== APRENDIZAJE ===\n" + "\n".join(f"- {rule}" for rule in learned_rules))

    messages = [{"role": "system", "content": "\n\n".join(sections)}]
    for message in history:
        messages.append(
            {
                "role": "user" if message.direction == "in" else "assistant",
                "content": summarize_message_content(message.content_type, message.body),
            }
        )
    messages.append({"role": "user", "content": trigger_text})

    return ReplyContext(
        instruction=instruction,
        system_prompt=messages[0]["content"],
        messages=messages,
        knowledge_included=knowledge_included,
    )


def extract_image_directive(reply_text: str) -> tuple[str, str | None]:
    match = _IMAGE_DIRECTIVE.search(reply_text)
    if match is None:
        return reply_text.strip(), None
    cleaned = (reply_text[: match.start()] + reply_text[match.end() :]).strip()
    return cleaned, match.group(1).strip()


def follow_up_instruction(wait_minutes: int) -> str:
    return (
        "[SISTEMA: Seguimiento automatico dentro de ventana de 24 horas. "
        f"El cliente no respondio en {wait_minutes} minutos. "
        "Genera UN mensaje corto de reenganche, natural y no invasivo. No saludes de nuevo.]"
    )


ANALYSIS_INSTRUCTION = (
    "Analiza la conversacion de ventas y responde SOLO con JSON valido con las claves "
    '"probability" ("ALTA", "MEDIA" o "BAJA"), "should_call" (true/false) y "summary" '
    "(una frase corta en espanol sobre el interes de compra del cliente)."
)


def kanban_column_changes(column: KanbanColumn) -> dict[str, Any]:
    return dict(_KANBAN_FLAGS[column])


def kanban_column_for(*, order_status: OrderStatus, should_call: bool, needs_human_attention: bool) -> KanbanColumn:
    if needs_human_attention:
        return "humano"
    if order_status == "delivered":
        return "entregado"
    if order_status == "ready":
        return "listo"
    if order_status == "pending":
        return "proceso"
    if should_call:
        return "llamar"
    return "nuevo"
