"""
Side-effect handlers wired to the notification clients.

Each handler receives the order and the status it just reached. A handler
returns normally when there is nobody to notify (no phone or email on the
order); it raises when delivery was attempted and failed, so the dispatcher
schedules a retry.
"""
from typing import Dict, Optional

import structlog

from order_payments.core.dispatch import ActionHandler, SideEffectAction
from order_payments.core.domain import OrderStatus
from order_payments.database.models import Order
from order_payments.notifications import mailer, sms
from order_payments.notifications.inventory import InventoryClient
from order_payments.notifications.mailer import EmailSender
from order_payments.notifications.sms import SMSClient

logger = structlog.get_logger(__name__)


def sms_text(order: Order, status: OrderStatus) -> Optional[str]:
    """Message for a status, or None when the status has no SMS."""
    if status == OrderStatus.PAID:
        return sms.payment_confirmation_message(
            order.id, order.total, order.payment_method, order.currency
        )
    if status == OrderStatus.SHIPPED:
        return sms.dispatch_message(order.id)
    if status == OrderStatus.DELIVERED:
        return sms.delivery_message(order.id)
    if status == OrderStatus.CANCELLED:
        return sms.cancellation_message(order.id, order.cancellation_reason)
    return None


def build_handlers(
    sms_client: SMSClient,
    email_sender: EmailSender,
    inventory_client: InventoryClient,
) -> Dict[SideEffectAction, ActionHandler]:
    """Map every side-effect action to a coroutine using the given clients."""

    async def send_sms(order: Order, status: OrderStatus) -> None:
        message = sms_text(order, status)
        if not order.customer_phone or message is None:
            logger.info("sms_skipped", order_id=order.id, status=status.value)
            return
        await sms_client.send(order.customer_phone, message)

    async def send_email(order: Order, status: OrderStatus) -> None:
        if not order.customer_email:
            logger.info("email_skipped", order_id=order.id, status=status.value)
            return
        frontend_url = email_sender.config.frontend_url
        if status == OrderStatus.PAID:
            subject, body = mailer.payment_receipt(
                order.id, order.total, order.currency, order.payment_method, frontend_url
            )
        elif status == OrderStatus.DELIVERED:
            subject, body = mailer.delivery_confirmation(order.id, frontend_url)
        else:
            return
        await email_sender.send(order.customer_email, subject, body)

    async def release_inventory(order: Order, status: OrderStatus) -> None:
        await inventory_client.release(order.id, order.cancellation_reason)

    return {
        SideEffectAction.SMS: send_sms,
        SideEffectAction.EMAIL: send_email,
        SideEffectAction.INVENTORY_RELEASE: release_inventory,
    }
