"""
Cache invalidation signals
Automatically invalidate report caches when project or billing data changes
"""
from django.db import transaction
from django.db.models.signals import post_save, post_delete
from django.dispatch import receiver
import logging
import threading
from contextlib import contextmanager

from .cache_utils import bump_reports_version

logger = logging.getLogger(__name__)

# Thread-local storage to track signal suspension
_thread_locals = threading.local()

REPORT_SOURCE_MODELS = {
    'Project', 'Task', 'Timesheet',
    'SalesOrder', 'Invoice', 'PurchaseOrder', 'VendorBill', 'Expense',
}


@contextmanager
def suspend_cache_signals():
    """
    Context manager to temporarily suspend cache invalidation signals.
    Useful for bulk operations to prevent excessive cache clearing.
    Remember to manually invalidate cache after the block!
    """
    previous = is_suspended()
    try:
        _thread_locals.suspended = True
        yield
    finally:
        _thread_locals.suspended = previous


def is_suspended():
    return getattr(_thread_locals, 'suspended', False)


def invalidate_reports_cache_manual():
    """Manually invalidate report caches"""
    try:
        bump_reports_version()
        logger.info("Invalidated reports cache (Manual/Signal)")
    except Exception as e:
        logger.warning(f"Error invalidating reports cache: {e}")


# --- Signal Handlers ---

@receiver([post_save, post_delete])
def invalidate_reports_cache(sender, instance, **kwargs):
    """Invalidate reports when projects, timesheets or documents change"""
    if is_suspended():
        return

    if sender.__name__ not in REPORT_SOURCE_MODELS:
        return
    if sender._meta.app_label not in ('projects', 'billing'):
        return

    # Invalidate after commit so a concurrent reader cannot re-cache stale data
    transaction.on_commit(invalidate_reports_cache_manual)
