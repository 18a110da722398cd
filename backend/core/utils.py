"""Audit trail helpers"""
import logging

from django.db import transaction

from .models import AuditLog

logger = logging.getLogger(__name__)

REFERENCE_ATTRIBUTES = ('number', 'reference', 'code', 'username', 'name', 'title')


def get_client_ip(request):
    """Client address, preferring the first hop of X-Forwarded-For"""
    meta = getattr(request, 'META', None)
    if not meta:
        return None
    forwarded = meta.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip() or None
    return meta.get('REMOTE_ADDR') or None


def describe_instance(instance):
    """Human readable reference for a model instance (document number, project code...)"""
    for attribute in REFERENCE_ATTRIBUTES:
        value = getattr(instance, attribute, None)
        if value:
            return str(value)
    return str(instance.pk)


def create_audit_log(request=None, action=None, model_name=None, object_id=None,
                     changes=None, user=None, object_reference=None, instance=None):
    """
    Record who did what to which object.

    Pass ``instance`` to derive the model name, id and reference, or give them
    explicitly when the object is already gone (deletes). The acting user is
    ``user`` or the request's user; anonymous users are stored as null.
    Failures are logged and never interrupt the calling request.
    """
    if instance is not None:
        model_name = model_name or type(instance).__name__
        object_id = object_id if object_id is not None else instance.pk
        object_reference = object_reference or describe_instance(instance)

    if not action or not model_name or object_id in (None, ''):
        logger.warning(f"Audit log skipped: action={action}, model_name={model_name}, object_id={object_id}")
        return None

    actor = user or getattr(request, 'user', None)
    if actor is not None and not actor.is_authenticated:
        actor = None

    try:
        with transaction.atomic():
            return AuditLog.objects.create(
                user=actor,
                action=action,
                model_name=model_name,
                object_id=str(object_id),
                object_reference=object_reference,
                changes=changes or {},
                ip_address=get_client_ip(request),
            )
    except Exception as e:
        logger.error(f"Failed to create audit log for {model_name} {object_id}: {e}", exc_info=True)
        return None
