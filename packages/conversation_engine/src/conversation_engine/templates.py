"""
Customer-facing message templates.

Texts the engine sends on its own (not written by the model). Each template
has an Arabic and an English variant; when the business has no language
configured both are sent, Arabic first (one per line, or one per
paragraph for multi-line templates).
"""

from enum import Enum


class TemplateName(str, Enum):
    """Engine-authored messages."""

    APOLOGY = "apology"
    PAYMENT_LINK = "payment_link"
    PAYMENT_CONFIRMED = "payment_confirmed"


_TEMPLATES: dict[TemplateName, dict[str, str]] = {
    TemplateName.APOLOGY: {
        "ar": "عذراً، حدث خطأ مؤقت. يرجى المحاولة مرة أخرى.",
        "en": "Sorry, a temporary error occurred. Please try again.",
    },
    TemplateName.PAYMENT_LINK: {
        "ar": "شكراً لطلبك! 🛒\nرقم الطلب: {order_ref}\nالمبلغ: {amount} {currency}\n\nلإتمام الدفع يرجى استخدام الرابط التالي:\n{url}",
        "en": "Thank you for your order! 🛒\nOrder: {order_ref}\nAmount: {amount} {currency}\n\nPlease complete your payment here:\n{url}",
    },
    TemplateName.PAYMENT_CONFIRMED: {
        "ar": "✅ تم استلام الدفع بنجاح!\nرقم الطلب: {order_ref}\nالمبلغ: {amount} {currency}\n\nشكراً لك، سيتم تجهيز طلبك قريباً.",
        "en": "✅ Payment received!\nOrder: {order_ref}\nAmount: {amount} {currency}\n\nThank you, your order is being prepared.",
    },
}


def render(name: TemplateName, language: str | None = None, **values: object) -> str:
    """
    Render a template in the given language.

    Args:
        name: Template to render
        language: "ar", "en", or None for both
        **values: Placeholder values

    Returns:
        Message text
    """
    variants = _TEMPLATES[name]
    if language in variants:
        return variants[language].format(**values)
    separator = "\n\n" if any("\n" in text for text in variants.values()) else "\n"
    return separator.join(variants[lang].format(**values) for lang in ("ar", "en"))


def order_reference(order_id: object) -> str:
    """Short, customer-friendly order reference."""
    return str(order_id).split("-")[0].upper()
