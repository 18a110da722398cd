import logging
from datetime import datetime, timedelta
from decimal import Decimal

from django.db.models import Sum, Count, Q
from django.db.models.functions import TruncMonth
from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from backend.billing.models import Invoice, VendorBill, Expense, SalesOrder, PurchaseOrder
from backend.core.cache_utils import get_cached_report, cache_report
from backend.core.permissions import IsManagerOrAdmin
from backend.projects.models import Project, Task, Timesheet

logger = logging.getLogger('backend.reports')

ZERO = Decimal('0.00')


def parse_period(request, default_days=365):
    """Read ``date_from``/``date_to`` (YYYY-MM-DD), defaulting to the last ``default_days`` days"""
    date_from = request.query_params.get('date_from', None)
    date_to = request.query_params.get('date_to', None)
    date_to = datetime.strptime(date_to, '%Y-%m-%d').date() if date_to else timezone.localdate()
    if date_from:
        date_from = datetime.strptime(date_from, '%Y-%m-%d').date()
    else:
        date_from = date_to - timedelta(days=default_days)
    return date_from, date_to


def scoped_projects(user):
    """Admins report on every project, managers on the projects they manage"""
    projects = Project.objects.all()
    if not user.is_admin_role:
        projects = projects.filter(manager=user)
    return projects


def scope_key(user):
    return 'all' if user.is_admin_role else f'manager-{user.pk}'


def bad_period():
    return Response({'error': 'Dates must use the YYYY-MM-DD format.'}, status=status.HTTP_400_BAD_REQUEST)


def _sum(queryset, field):
    return queryset.aggregate(total=Sum(field))['total'] or ZERO


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def financial_summary(request):
    """Revenue, cost and profit across projects with receivables, payables and a monthly trend"""
    try:
        date_from, date_to = parse_period(request)
    except ValueError:
        return bad_period()

    cached, cache_key = get_cached_report('financial_summary', scope_key(request.user), date_from, date_to)
    if cached is not None:
        return Response(cached)

    projects = scoped_projects(request.user).filter(archived=False)
    totals = projects.aggregate(revenue=Sum('revenue'), cost=Sum('cost'), profit=Sum('profit'), budget=Sum('budget'))

    invoices = Invoice.objects.filter(project__in=projects, invoice_date__gte=date_from, invoice_date__lte=date_to)
    bills = VendorBill.objects.filter(project__in=projects, bill_date__gte=date_from, bill_date__lte=date_to)
    expenses = Expense.objects.filter(project__in=projects, date__gte=date_from, date__lte=date_to)

    invoice_status = invoices.values('status').annotate(count=Count('id'), total=Sum('total')).order_by('status')

    monthly_revenue = invoices.exclude(status=Invoice.CANCELLED_STATUS).annotate(
        month=TruncMonth('invoice_date')
    ).values('month').annotate(total=Sum('total')).order_by('month')
    monthly_bills = bills.exclude(status=VendorBill.CANCELLED_STATUS).annotate(
        month=TruncMonth('bill_date')
    ).values('month').annotate(total=Sum('total')).order_by('month')
    monthly_expenses = expenses.filter(status__in=Expense.COUNTED_STATUSES).annotate(
        month=TruncMonth('date')
    ).values('month').annotate(total=Sum('amount')).order_by('month')

    trend = {}
    for row in monthly_revenue:
        trend.setdefault(row['month'], {'revenue': ZERO, 'cost': ZERO})['revenue'] += row['total']
    for row in list(monthly_bills) + list(monthly_expenses):
        trend.setdefault(row['month'], {'revenue': ZERO, 'cost': ZERO})['cost'] += row['total']

    data = {
        'period': {
            'from': date_from.isoformat(),
            'to': date_to.isoformat()
        },
        'summary': {
            'projects': projects.count(),
            'revenue': float(totals['revenue'] or ZERO),
            'cost': float(totals['cost'] or ZERO),
            'profit': float(totals['profit'] or ZERO),
            'budget': float(totals['budget'] or ZERO),
        },
        'receivables': {
            'outstanding': float(_sum(invoices.filter(status__in=['sent', 'overdue']), 'total')),
            'overdue': float(_sum(invoices.filter(status='overdue'), 'total')),
            'collected': float(_sum(invoices.filter(status='paid'), 'total')),
        },
        'payables': {
            'outstanding': float(_sum(bills.filter(status__in=['approved', 'overdue']), 'total')),
            'paid': float(_sum(bills.filter(status='paid'), 'total')),
        },
        'expenses': {
            'approved': float(_sum(expenses.filter(status__in=Expense.COUNTED_STATUSES), 'amount')),
            'pending': float(_sum(expenses.filter(status='submitted'), 'amount')),
        },
        'invoices_by_status': [
            {'status': row['status'], 'count': row['count'], 'total': float(row['total'] or ZERO)}
            for row in invoice_status
        ],
        'monthly_trend': [
            {
                'month': month.strftime('%Y-%m'),
                'revenue': float(values['revenue']),
                'cost': float(values['cost']),
                'profit': float(values['revenue'] - values['cost']),
            }
            for month, values in sorted(trend.items())
        ],
    }
    cache_report(cache_key, data)
    return Response(data)


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def project_performance(request):
    """Per-project margin and budget usage, most profitable first"""
    include_archived = request.query_params.get('include_archived') == 'true'
    status_filter = request.query_params.get('status', None)

    cached, cache_key = get_cached_report('project_performance', scope_key(request.user), include_archived, status_filter)
    if cached is not None:
        return Response(cached)

    projects = scoped_projects(request.user).select_related('manager')
    if not include_archived:
        projects = projects.filter(archived=False)
    if status_filter:
        projects = projects.filter(status=status_filter)

    rows = []
    for project in projects.order_by('-profit', 'name'):
        budget_used = float(project.cost * 100 / project.budget) if project.budget else None
        rows.append({
            'id': project.id,
            'name': project.name,
            'code': project.code,
            'client': project.client,
            'status': project.status,
            'manager': project.manager.username if project.manager else None,
            'progress': project.progress,
            'revenue': float(project.revenue),
            'cost': float(project.cost),
            'profit': float(project.profit),
            'margin': float(project.margin),
            'budget': float(project.budget),
            'budget_used_percent': round(budget_used, 2) if budget_used is not None else None,
            'over_budget': bool(project.budget) and project.cost > project.budget,
        })

    data = {'results': rows, 'count': len(rows)}
    cache_report(cache_key, data)
    return Response(data)


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def expense_breakdown(request):
    """Approved and paid expenses by category"""
    try:
        date_from, date_to = parse_period(request)
    except ValueError:
        return bad_period()
    project_id = request.query_params.get('project', None)

    cached, cache_key = get_cached_report('expense_breakdown', scope_key(request.user), date_from, date_to, project_id)
    if cached is not None:
        return Response(cached)

    expenses = Expense.objects.filter(
        status__in=Expense.COUNTED_STATUSES, date__gte=date_from, date__lte=date_to
    )
    if not request.user.is_admin_role:
        expenses = expenses.filter(project__in=scoped_projects(request.user))
    if project_id:
        expenses = expenses.filter(project_id=project_id)

    labels = dict(Expense.CATEGORY_CHOICES)
    by_category = expenses.values('category').annotate(count=Count('id'), total=Sum('amount')).order_by('-total')
    grand_total = _sum(expenses, 'amount')

    data = {
        'period': {
            'from': date_from.isoformat(),
            'to': date_to.isoformat()
        },
        'total': float(grand_total),
        'count': expenses.count(),
        'categories': [
            {
                'category': row['category'],
                'label': labels.get(row['category'], row['category']),
                'count': row['count'],
                'total': float(row['total'] or ZERO),
                'share_percent': round(float(row['total'] * 100 / grand_total), 2) if grand_total else 0.0,
            }
            for row in by_category
        ],
    }
    cache_report(cache_key, data)
    return Response(data)


@api_view(['GET'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def time_utilization(request):
    """Hours logged per user, split into billable and approved time"""
    try:
        date_from, date_to = parse_period(request, default_days=30)
    except ValueError:
        return bad_period()
    project_id = request.query_params.get('project', None)

    cached, cache_key = get_cached_report('time_utilization', scope_key(request.user), date_from, date_to, project_id)
    if cached is not None:
        return Response(cached)

    timesheets = Timesheet.objects.filter(date__gte=date_from, date__lte=date_to)
    if not request.user.is_admin_role:
        timesheets = timesheets.filter(project__in=scoped_projects(request.user))
    if project_id:
        timesheets = timesheets.filter(project_id=project_id)

    per_user = timesheets.values('user_id', 'user__username').annotate(
        hours=Sum('hours'),
        billable_hours=Sum('hours', filter=Q(billable=True)),
        approved_hours=Sum('hours', filter=Q(approved=True)),
        cost=Sum('cost', filter=Q(approved=True)),
        entries=Count('id'),
    ).order_by('-hours')

    users = []
    for row in per_user:
        hours = row['hours'] or ZERO
        billable = row['billable_hours'] or ZERO
        users.append({
            'user_id': row['user_id'],
            'username': row['user__username'],
            'hours': float(hours),
            'billable_hours': float(billable),
            'approved_hours': float(row['approved_hours'] or ZERO),
            'approved_cost': float(row['cost'] or ZERO),
            'entries': row['entries'],
            'utilization_percent': round(float(billable * 100 / hours), 2) if hours else 0.0,
        })

    total_hours = _sum(timesheets, 'hours')
    billable_hours = _sum(timesheets.filter(billable=True), 'hours')
    data = {
        'period': {
            'from': date_from.isoformat(),
            'to': date_to.isoformat()
        },
        'summary': {
            'hours': float(total_hours),
            'billable_hours': float(billable_hours),
            'utilization_percent': round(float(billable_hours * 100 / total_hours), 2) if total_hours else 0.0,
        },
        'users': users,
    }
    cache_report(cache_key, data)
    return Response(data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def project_stats(request, pk):
    """Dashboard card for one project: tasks, time, documents and stored financials"""
    project = get_object_or_404(Project.visible_to(request.user), pk=pk)

    cached, cache_key = get_cached_report('project_stats', project.pk)
    if cached is not None:
        return Response(cached)

    tasks = Task.objects.filter(project=project, archived=False)
    task_counts = {value: 0 for value, _ in Task.STATUS_CHOICES}
    for row in tasks.values('status').annotate(count=Count('id')):
        task_counts[row['status']] = row['count']

    timesheets = Timesheet.objects.filter(project=project)
    document_counts = {
        'sales_orders': SalesOrder.objects.filter(project=project).count(),
        'invoices': Invoice.objects.filter(project=project).count(),
        'purchase_orders': PurchaseOrder.objects.filter(project=project).count(),
        'vendor_bills': VendorBill.objects.filter(project=project).count(),
        'expenses': Expense.objects.filter(project=project).count(),
    }

    data = {
        'project': {
            'id': project.id,
            'name': project.name,
            'status': project.status,
            'progress': project.progress,
            'team_size': project.team_members.count(),
        },
        'tasks': {
            'total': tasks.count(),
            'by_status': task_counts,
            'overdue': tasks.filter(due_date__lt=timezone.localdate()).exclude(status='completed').count(),
            'estimated_hours': float(_sum(tasks, 'estimated_hours')),
        },
        'time': {
            'hours_logged': float(_sum(timesheets, 'hours')),
            'approved_hours': float(_sum(timesheets.filter(approved=True), 'hours')),
            'pending_approval': timesheets.filter(approved=False).count(),
        },
        'documents': document_counts,
        'financials': {
            'revenue': float(project.revenue),
            'cost': float(project.cost),
            'profit': float(project.profit),
            'margin': float(project.margin),
            'budget': float(project.budget),
            'updated_at': project.financials_updated_at.isoformat() if project.financials_updated_at else None,
        },
    }
    cache_report(cache_key, data)
    return Response(data)
