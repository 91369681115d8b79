from __future__ import annotations


class DomainError(Exception):
    """Base para erros de dominio."""


class BillingSyncError(DomainError):
    """Base para erros de sincronizacao com o processador."""

    kind = "billing_sync_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PlanValidationError(BillingSyncError):
    """Parametros de plano invalidos; rejeitado antes de abrir transacao."""

    kind = "validation_error"


class PlanNotFoundError(BillingSyncError):
    """Plano solicitado nao existe."""

    kind = "plan_not_found"


class SubscriptionNotFoundError(BillingSyncError):
    """Assinatura solicitada nao existe."""

    kind = "subscription_not_found"


class ProcessorUnreachableError(BillingSyncError):
    """Falha transitoria (rede, timeout, 5xx) ao chamar o processador."""

    kind = "processor_unreachable"


class ProcessorRejectedError(BillingSyncError):
    """Processador recusou a requisicao; nao deve ser repetida."""

    kind = "processor_rejected"


class LocalConstraintViolationError(BillingSyncError):
    """Restricao do banco local violada (nome duplicado, espelho duplicado)."""

    kind = "local_constraint_violation"


class PlanLockTimeoutError(BillingSyncError):
    """Lock do plano nao obtido dentro do orcamento."""

    kind = "plan_lock_timeout"


class ResyncExhaustedError(BillingSyncError):
    """Limite de tentativas de ressincronizacao atingido."""

    kind = "resync_exhausted"


class OrphanWebhookError(BillingSyncError):
    """Webhook referencia um espelho que ainda nao existe localmente."""

    kind = "orphan_webhook"


class InvalidWebhookSignatureError(BillingSyncError):
    """Assinatura do webhook invalida."""

    kind = "invalid_webhook_signature"
