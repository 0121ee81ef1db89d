from __future__ import annotations


class BillingError(Exception):
    """Base class for billing domain errors.

    ``public_message`` is safe to show to end users; ``str(exc)`` may carry
    internal detail (processor codes, ids) and is only meant for logs.
    """

    status_code = 400
    public_message = "No se pudo procesar la operacion de pago"

    def __init__(self, detail: str | None = None, *, public_message: str | None = None):
        super().__init__(detail or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class AlreadySubscribed(BillingError):
    status_code = 409
    public_message = "Ya tienes una suscripcion activa con este creador"


class SelfSubscription(BillingError):
    status_code = 400
    public_message = "No puedes suscribirte a ti mismo"


class CreatorNotFound(BillingError):
    status_code = 404
    public_message = "Creador no encontrado"


class SubscriptionNotFound(BillingError):
    status_code = 404
    public_message = "Suscripcion no encontrada"


class PurchaseNotFound(BillingError):
    status_code = 404
    public_message = "Compra no encontrada"


class AlreadyPurchased(BillingError):
    status_code = 409
    public_message = "Ya compraste este contenido"


class SelfPurchase(BillingError):
    status_code = 400
    public_message = "No puedes comprar tu propio contenido"


class InvalidTransition(BillingError):
    status_code = 409
    public_message = "La operacion no es valida en el estado actual"


class GatewayError(BillingError):
    """Normalized payment processor failure."""

    status_code = 502
    public_message = "El procesador de pagos no respondio correctamente"

    def __init__(self, detail: str | None = None, *, code: str | None = None, public_message: str | None = None):
        super().__init__(detail, public_message=public_message)
        self.code = code


class GatewayDeclined(GatewayError):
    status_code = 402
    public_message = "El pago fue rechazado. Actualiza tu metodo de pago e intenta de nuevo."


class GatewayTransient(GatewayError):
    status_code = 503
    public_message = "No pudimos confirmar el pago. Intenta de nuevo en unos minutos."


class GatewayConfigurationError(GatewayError):
    status_code = 500
    public_message = "Error interno del sistema de pagos"


class InconsistentLedger(BillingError):
    status_code = 500
    public_message = "Error interno del sistema de pagos"


class DuplicateWebhookEvent(BillingError):
    """Not a failure: the event was already applied. Callers answer 200."""

    status_code = 200
    public_message = "Evento ya procesado"


class PostNotFound(BillingError):
    status_code = 404
    public_message = "Contenido no encontrado"


class InvalidAmount(BillingError):
    status_code = 400
    public_message = "Monto invalido"


class PaymentInProgress(BillingError):
    status_code = 409
    public_message = "Hay un pago en proceso con este creador; intenta de nuevo en unos minutos"
