"""
Project financial roll-up.

``recompute_project_financials`` rebuilds a project's revenue, cost and
profit from every contributing source in one pass. Command handlers call it
after each document mutation, inside the same transaction, so the figures
always reflect committed documents.

The project row is locked before aggregating, which serializes concurrent
roll-ups for one project. The recompute runs in its own savepoint: when it
fails, the error is logged and reported through ``RollupResult`` while the
document write that triggered it still commits.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from backend.core.money import quantize_money, ZERO
from backend.core.utils import create_audit_log
from backend.projects.models import Project, Timesheet
from .models import SalesOrder, Invoice, PurchaseOrder, VendorBill, Expense

logger = logging.getLogger(__name__)

STATUS_UPDATED = 'updated'
STATUS_STALE = 'stale'
STATUS_SKIPPED = 'skipped'

DEFAULT_SOURCES = {
    'REVENUE_SOURCES': ['invoice'],
    'COST_SOURCES': ['vendor_bill', 'expense', 'timesheet'],
}


@dataclass
class RollupResult:
    project_id: Optional[int]
    status: str
    kind: Optional[str] = None
    revenue: Optional[str] = None
    cost: Optional[str] = None
    profit: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self):
        return self.status != STATUS_STALE

    def as_dict(self):
        return asdict(self)


def _document_total(model, project_id):
    return (
        model.objects.filter(project_id=project_id)
        .exclude(status=model.CANCELLED_STATUS)
        .aggregate(total=Sum('total'))['total']
    ) or ZERO


def _expense_total(project_id):
    return (
        Expense.objects.filter(project_id=project_id, status__in=Expense.COUNTED_STATUSES)
        .aggregate(total=Sum('amount'))['total']
    ) or ZERO


def _timesheet_total(project_id):
    return (
        Timesheet.objects.filter(project_id=project_id, approved=True)
        .aggregate(total=Sum('cost'))['total']
    ) or ZERO


SOURCE_AGGREGATES = {
    'sales_order': lambda project_id: _document_total(SalesOrder, project_id),
    'invoice': lambda project_id: _document_total(Invoice, project_id),
    'purchase_order': lambda project_id: _document_total(PurchaseOrder, project_id),
    'vendor_bill': lambda project_id: _document_total(VendorBill, project_id),
    'expense': _expense_total,
    'timesheet': _timesheet_total,
}


def get_sources():
    """Revenue and cost source kinds from ``settings.PROJECT_FINANCIALS``"""
    configured = getattr(settings, 'PROJECT_FINANCIALS', {}) or {}
    revenue_sources = list(configured.get('REVENUE_SOURCES', DEFAULT_SOURCES['REVENUE_SOURCES']))
    cost_sources = list(configured.get('COST_SOURCES', DEFAULT_SOURCES['COST_SOURCES']))
    unknown = set(revenue_sources + cost_sources) - set(SOURCE_AGGREGATES)
    if unknown:
        raise ImproperlyConfigured(f"Unknown PROJECT_FINANCIALS sources: {', '.join(sorted(unknown))}")
    return revenue_sources, cost_sources


def compute_financials(project_id, revenue_sources=None, cost_sources=None):
    """Aggregate (revenue, cost, profit) for a project without writing anything"""
    if revenue_sources is None or cost_sources is None:
        revenue_sources, cost_sources = get_sources()
    revenue = quantize_money(sum((SOURCE_AGGREGATES[kind](project_id) for kind in revenue_sources), ZERO))
    cost = quantize_money(sum((SOURCE_AGGREGATES[kind](project_id) for kind in cost_sources), ZERO))
    return revenue, cost, revenue - cost


def recompute_project_financials(project_id, kind=None, user=None):
    """
    Recompute and store revenue, cost and profit for ``project_id``.

    ``kind`` names the source that triggered the recompute and is only used
    for logging. Returns a ``RollupResult``; failures never propagate.
    """
    if not project_id:
        return RollupResult(project_id=None, status=STATUS_SKIPPED, kind=kind)

    revenue_sources, cost_sources = get_sources()

    try:
        with transaction.atomic():
            project = Project.objects.select_for_update().get(pk=project_id)
            previous = (project.revenue, project.cost, project.profit)
            revenue, cost, profit = compute_financials(project_id, revenue_sources, cost_sources)

            project.revenue = revenue
            project.cost = cost
            project.profit = profit
            project.financials_updated_at = timezone.now()
            project.save(update_fields=['revenue', 'cost', 'profit', 'financials_updated_at', 'updated_at'])
    except Project.DoesNotExist:
        logger.warning(f"Financial roll-up skipped: project {project_id} does not exist (trigger={kind})")
        return RollupResult(project_id=project_id, status=STATUS_SKIPPED, kind=kind,
                            error='Project not found')
    except Exception as e:
        logger.exception(f"Financial roll-up failed for project {project_id} (trigger={kind})")
        return RollupResult(project_id=project_id, status=STATUS_STALE, kind=kind, error=str(e))

    logger.info(
        f"Project {project_id} financials recomputed (trigger={kind}): "
        f"revenue={revenue} cost={cost} profit={profit}"
    )
    if previous != (revenue, cost, profit):
        create_audit_log(
            user=user,
            action='financials_recompute',
            model_name='Project',
            object_id=project_id,
            object_reference=project.code or project.name,
            changes={
                'trigger': kind,
                'revenue': {'old': previous[0], 'new': revenue},
                'cost': {'old': previous[1], 'new': cost},
                'profit': {'old': previous[2], 'new': profit},
            },
        )
    return RollupResult(project_id=project_id, status=STATUS_UPDATED, kind=kind,
                        revenue=str(revenue), cost=str(cost), profit=str(profit))


def recompute_for_change(project_id, previous_project_id=None, kind=None, user=None):
    """
    Recompute every project touched by a document change.

    Returns the result for ``project_id`` (the document's current project),
    with the previous project's result attached when the document moved.
    Projects are locked in ascending id order so opposite moves cannot deadlock.
    """
    project_ids = [project_id]
    if previous_project_id and previous_project_id != project_id:
        project_ids.append(previous_project_id)

    by_id = {}
    for pid in sorted(project_ids, key=lambda value: (value is None, value or 0)):
        by_id[pid] = recompute_project_financials(pid, kind=kind, user=user)
    return [by_id[pid] for pid in project_ids]


def financials_payload(results):
    """Serialize roll-up results for an API response"""
    primary = results[0].as_dict()
    if len(results) > 1:
        primary['previous_project'] = results[1].as_dict()
    return primary
