from __future__ import annotations

from billing_sync.application.dto.billing import SubscriptionDetailsOutput
from billing_sync.application.ports.billing_store_port import BillingStorePort
from billing_sync.domain.exceptions import SubscriptionNotFoundError


class GetSubscriptionUseCase:
    def __init__(self, *, store: BillingStorePort):
        self._store = store

    def execute(self, subscription_id: str) -> SubscriptionDetailsOutput:
        subscription = self._store.get_subscription(subscription_id=subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError("Subscription not found.")
        return SubscriptionDetailsOutput(
            subscription=subscription,
            mirror=self._store.get_mirror_subscription(subscription_id=subscription_id),
        )
