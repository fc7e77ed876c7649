"""Customer-facing (Spanish) messages for processor error codes.

The orchestration layer never shows these itself; ``ProcessorRejected``
exposes them so the checkout flow can pick a message without parsing vendor
payloads.
"""

from typing import Dict, Optional

DEFAULT_MESSAGE = "Ocurrió un error al procesar el pago. Por favor, intenta de nuevo."

USER_MESSAGES: Dict[str, str] = {
    # Card validation
    "card_declined": "Tu tarjeta fue rechazada. Por favor, verifica los datos o utiliza otra tarjeta.",
    "generic_decline": "Tu tarjeta fue rechazada. Por favor, verifica los datos o utiliza otra tarjeta.",
    "insufficient_funds": "Tu tarjeta no tiene fondos suficientes. Por favor, utiliza otra tarjeta.",
    "expired_card": "Tu tarjeta ha expirado. Por favor, utiliza otra tarjeta.",
    "invalid_cvc": "El código de seguridad (CVC) es inválido. Por favor, verifica e intenta de nuevo.",
    "incorrect_cvc": "El código de seguridad (CVC) es inválido. Por favor, verifica e intenta de nuevo.",
    "invalid_number": "El número de tarjeta es inválido. Por favor, verifica e intenta de nuevo.",
    "invalid_expiry_date": "La fecha de expiración es inválida. Por favor, verifica e intenta de nuevo.",
    "invalid_expiry_month": "La fecha de expiración es inválida. Por favor, verifica e intenta de nuevo.",
    "invalid_expiry_year": "La fecha de expiración es inválida. Por favor, verifica e intenta de nuevo.",
    "processor_declined": "El banco rechazó la transacción. Por favor, contacta a tu banco o utiliza otra tarjeta.",
    "suspected_fraud": "La transacción fue rechazada por sospecha de fraude. Por favor, contacta a tu banco.",
    # Customer
    "invalid_email": "El correo electrónico proporcionado no es válido. Por favor, verifica e intenta de nuevo.",
    "invalid_phone": "El número de teléfono proporcionado no es válido. Por favor, verifica e intenta de nuevo.",
    "customer_not_found": "No se encontró el cliente. Por favor, intenta de nuevo o contacta a soporte.",
    # Processing
    "processing_error": "Ocurrió un error al procesar el pago. Por favor, intenta de nuevo más tarde.",
    "duplicate_transaction": "Esta transacción parece ser un duplicado de una transacción reciente.",
    "resource_not_found": "No se encontró el recurso solicitado. Por favor, contacta a soporte.",
    "resource_missing": "No se encontró el recurso solicitado. Por favor, contacta a soporte.",
    "parameter_validation_error": "Uno o más parámetros son inválidos. Por favor, verifica e intenta de nuevo.",
    "authentication_error": "Error de autenticación. Por favor, contacta a soporte.",
    "rate_limit_error": "Se ha excedido el límite de solicitudes. Por favor, intenta de nuevo más tarde.",
    # OXXO
    "cash_payment_expired": "El pago en OXXO ha expirado. Por favor, genera una nueva referencia.",
    "invalid_reference": "La referencia de pago es inválida. Por favor, genera una nueva referencia.",
    # Transport
    "server_error": "Error en el servidor de pagos. Por favor, intenta de nuevo más tarde.",
    "timeout_error": "La operación ha tardado demasiado tiempo. Por favor, intenta de nuevo.",
}


def user_message_for(code: Optional[str]) -> str:
    """Return the Spanish message for a processor error code.

    Conekta nests codes as ``conekta.errors.<family>.<code>``; only the last
    segment is looked up.
    """
    if not code:
        return DEFAULT_MESSAGE
    key = code.rsplit(".", 1)[-1]
    return USER_MESSAGES.get(key, DEFAULT_MESSAGE)
