"""
xlog/errors.py

Hierarquia de exceções do núcleo de federação.

Falhas de assinatura nunca escapam de `verify()`: são convertidas em False.
Falhas de entrega nunca derrubam o worker: são registradas na linha de
`Delivery` e ficam a cargo do RetryScheduler.
"""


class FederationError(Exception):
    pass


# ---------------------------------------------------------------------------
# Assinaturas recebidas
# ---------------------------------------------------------------------------


class SignatureError(FederationError):
    pass


class SignatureInvalid(SignatureError):
    pass


class ReplayDetected(SignatureError):
    pass


class ClockSkewExceeded(SignatureError):
    pass


class ActorUnresolvable(SignatureError):
    pass


# ---------------------------------------------------------------------------
# Atividades recebidas
# ---------------------------------------------------------------------------


class MalformedActivity(FederationError):
    pass


# ---------------------------------------------------------------------------
# Entregas
# ---------------------------------------------------------------------------


class DeliveryError(FederationError):
    pass


class DeliveryNetworkError(DeliveryError):
    pass


class DeliveryHTTPError(DeliveryError):
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Delivery failed: HTTP {status}")


class MissingDeliveryMetadata(DeliveryError):
    """Job sem user/post/inbox (ou snapshot). Repetir não resolve."""


class PostNotPublishable(DeliveryError):
    pass
