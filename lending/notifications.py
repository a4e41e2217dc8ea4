"""Delivery of lending events to borrowers and operators.

Every event is recorded in NotificationLog. When ``NOTIFICATION_WEBHOOK_URL``
is set the event is also POSTed there as JSON. A failed POST is logged and
recorded, never raised: delivery problems must not undo lending state.
"""

import logging

import requests
from django.conf import settings

from .models import NotificationLog

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 5


def deliver(contact, event_type, payload, message='', transaction=None):
    """Send one event. ``contact`` is a dict with name/email/contact keys."""
    webhook_url = settings.NOTIFICATION_WEBHOOK_URL
    recipient = contact.get('email') or contact.get('contact') or contact.get('name') or ''
    message = message or payload.get('message', event_type)

    log = NotificationLog.objects.create(
        transaction=transaction,
        notification_type=event_type,
        message=message,
        payload=payload,
        sent_to=webhook_url or 'logged_only',
    )

    if not webhook_url:
        logger.info('%s for %s (logged only): %s', event_type, recipient or 'unknown', message)
        return log

    try:
        response = requests.post(webhook_url, json={
            'type': event_type,
            'message': message,
            'recipient': contact,
            'payload': payload,
        }, timeout=WEBHOOK_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning('Notification %s to %s failed: %s', event_type, webhook_url, e)
        return log

    NotificationLog.objects.filter(pk=log.pk).update(delivered=True)
    log.delivered = True
    return log


def operator_contact():
    return {'name': 'Inventory operator', 'email': settings.LENDING_OPERATOR_EMAIL, 'contact': ''}
