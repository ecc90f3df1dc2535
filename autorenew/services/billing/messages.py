"""Subscriber-facing billing messages (es, en, pt)."""

from __future__ import annotations

DEFAULT_LANGUAGE = "es"

_TEMPLATES: dict[str, dict[str, str]] = {
    "renewal_success": {
        "es": "Renovamos tu plan *{plan_name}* por un período más. ¡Gracias por confiar en Monedita!",
        "en": "Your *{plan_name}* plan has been renewed for another period. Thanks for trusting Monedita!",
        "pt": "Renovamos seu plano *{plan_name}* por mais um período. Obrigado por confiar no Monedita!",
    },
    "retry_scheduled": {
        "es": (
            "No pudimos procesar tu pago de renovación. Lo intentaremos de nuevo "
            "en {days} días. Verifica que tu tarjeta esté activa."
        ),
        "en": (
            "We couldn't process your renewal payment. We'll try again in {days} days. "
            "Please check that your card is active."
        ),
        "pt": (
            "Não conseguimos processar seu pagamento de renovação. Tentaremos novamente "
            "em {days} dias. Verifique se seu cartão está ativo."
        ),
    },
    "renewal_cancelled": {
        "es": (
            "Desactivamos la renovación automática porque no pudimos cobrar tu plan "
            "después de varios intentos.\n\nTu plan sigue activo hasta el {until}. "
            "Escribe *upgrade* para renovarlo manualmente."
        ),
        "en": (
            "We turned off auto-renew because we couldn't charge your plan after "
            "several attempts.\n\nYour plan stays active until {until}. "
            "Type *upgrade* to renew manually."
        ),
        "pt": (
            "Desativamos a renovação automática porque não conseguimos cobrar seu plano "
            "após várias tentativas.\n\nSeu plano continua ativo até {until}. "
            "Digite *upgrade* para renovar manualmente."
        ),
    },
    "auto_renew_cancelled": {
        "es": "Cancelaste la renovación automática. Tu plan sigue activo hasta el {until}.",
        "en": "You cancelled auto-renew. Your plan stays active until {until}.",
        "pt": "Você cancelou a renovação automática. Seu plano continua ativo até {until}.",
    },
    "payment_success": {
        "es": "🎉 *¡Pago exitoso!*\n\nTu plan ahora es *{plan_name}*.\n\n¡Gracias por confiar en Monedita!",
        "en": "🎉 *Payment successful!*\n\nYour plan is now *{plan_name}*.\n\nThank you for trusting Monedita!",
        "pt": "🎉 *Pagamento realizado!*\n\nSeu plano agora é *{plan_name}*.\n\nObrigado por confiar no Monedita!",
    },
    "payment_failed": {
        "es": (
            "❌ *Pago no procesado*\n\nTu pago no pudo ser procesado ({status}).\n\n"
            "Intenta de nuevo o usa otro método de pago. Escribe *upgrade* para ver las opciones."
        ),
        "en": (
            "❌ *Payment not processed*\n\nYour payment could not be processed ({status}).\n\n"
            "Try again or use a different payment method. Type *upgrade* to see the options."
        ),
        "pt": (
            "❌ *Pagamento não processado*\n\nSeu pagamento não pôde ser processado ({status}).\n\n"
            "Tente novamente ou use outro método de pagamento. Digite *upgrade* para ver as opções."
        ),
    },
}


def render(key: str, language: str | None = None, **params) -> str:
    templates = _TEMPLATES[key]
    template = templates.get(language or DEFAULT_LANGUAGE) or templates[DEFAULT_LANGUAGE]
    return template.format(**params)
