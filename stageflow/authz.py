"""
Authorization guard. Only the manufacturer organization drives the timeline:
its actors may request any transition, client organizations may not request any.
Reads are scoped to the owning organization (the manufacturer sees every order).
"""
import logging

from stageflow.errors import Forbidden, OrderNotFound
from stageflow.models import ActorContext, Order

logger = logging.getLogger(__name__)


class AuthorizationGuard:
    def __init__(self, manufacturer_organization_id: str):
        self.manufacturer_organization_id = manufacturer_organization_id

    def is_manufacturer(self, actor: ActorContext) -> bool:
        return actor.organization_id == self.manufacturer_organization_id

    def can_transition(self, actor: ActorContext, order: Order) -> bool:
        return self.is_manufacturer(actor)

    def can_read(self, actor: ActorContext, order: Order) -> bool:
        return self.is_manufacturer(actor) or actor.organization_id == order.organization_id

    def require_transition(self, actor: ActorContext, order: Order) -> None:
        if not self.can_transition(actor, order):
            logger.warning(
                "Transition denied: actor=%s role=%s org=%s order=%s",
                actor.actor_id, actor.role, actor.organization_id, order.id,
            )
            raise Forbidden("Only the manufacturer may change an order's stage", order_id=order.id)

    def require_read(self, actor: ActorContext, order: Order) -> None:
        """Other organizations get OrderNotFound so order ids are not disclosed."""
        if not self.can_read(actor, order):
            logger.warning("Read denied: actor=%s org=%s order=%s", actor.actor_id, actor.organization_id, order.id)
            raise OrderNotFound("Order not found or access denied", order_id=order.id)
