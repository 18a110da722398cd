"""
Document numbering.

Numbers look like ``INV-2024-007``: a per-type prefix, the current year and
a three-digit sequence that restarts every year. The sequence comes from a
``DocumentSequence`` row that is locked and incremented inside the caller's
transaction, so two concurrent creations never draw the same value.
"""
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

logger = logging.getLogger(__name__)

NUMBER_FORMAT = '{prefix}-{year}-{sequence:03d}'


def format_document_number(prefix, year, sequence):
    return NUMBER_FORMAT.format(prefix=prefix, year=year, sequence=sequence)


def next_sequence_value(prefix, year):
    from .models import DocumentSequence

    with transaction.atomic():
        sequence, _ = DocumentSequence.objects.select_for_update().get_or_create(prefix=prefix, year=year)
        DocumentSequence.objects.filter(pk=sequence.pk).update(last_value=F('last_value') + 1)
        sequence.refresh_from_db(fields=['last_value'])
    return sequence.last_value


def next_document_number(prefix, year=None):
    """Reserve and return the next number for ``prefix`` in ``year`` (defaults to this year)"""
    if year is None:
        year = timezone.localdate().year
    number = format_document_number(prefix, year, next_sequence_value(prefix, year))
    logger.debug(f"Assigned document number {number}")
    return number
