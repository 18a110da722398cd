"""
Test suite for the billing module
Tests: Line totals, Numbering, Documents, Expenses, Products, Financial roll-up, Concurrent roll-up, Recompute command
"""
import threading
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.utils import timezone
from rest_framework import status

from backend.billing.calculations import compute_line_amount, compute_document_totals
from backend.billing.models import Invoice, InvoiceLine, Expense, Product, DocumentSequence
from backend.billing.numbering import next_document_number, format_document_number
from backend.billing.rollup import (
    recompute_project_financials, recompute_for_change, compute_financials, get_sources,
    RollupResult, STATUS_UPDATED, STATUS_STALE, STATUS_SKIPPED,
)
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.projects.models import Project


class CalculationTests(TestCase):
    """Test line and document totals"""

    def test_line_amount(self):
        self.assertEqual(compute_line_amount(Decimal('3'), Decimal('19.99')), Decimal('59.97'))

    def test_line_amount_rounds_half_up(self):
        self.assertEqual(compute_line_amount(Decimal('1.5'), Decimal('0.03')), Decimal('0.05'))

    def test_document_totals_with_tax(self):
        totals = compute_document_totals([(2, '50.00'), (1, '10.00')], Decimal('10'))
        self.assertEqual(totals.subtotal, Decimal('110.00'))
        self.assertEqual(totals.tax_amount, Decimal('11.00'))
        self.assertEqual(totals.total, Decimal('121.00'))

    def test_total_is_subtotal_plus_tax(self):
        totals = compute_document_totals([(3, '33.33'), (1, '0.01')], Decimal('7.5'))
        self.assertEqual(totals.total, totals.subtotal + totals.tax_amount)

    def test_empty_document(self):
        totals = compute_document_totals([], Decimal('18'))
        self.assertEqual(totals.total, Decimal('0.00'))

    def test_line_amount_recomputed_on_save(self):
        invoice = TestDataFactory.create_invoice(lines=[(2, '10.00')])
        line = invoice.lines.get()
        self.assertEqual(line.amount, Decimal('20.00'))

        line.quantity = Decimal('5')
        line.amount = Decimal('1.00')
        line.save()
        line.refresh_from_db()
        self.assertEqual(line.amount, Decimal('50.00'))

        invoice.recalculate_totals()
        invoice.refresh_from_db()
        self.assertEqual(invoice.total, Decimal('50.00'))


class NumberingTests(TestCase):
    """Test document number sequences"""

    def setUp(self):
        self.year = timezone.localdate().year

    def test_format(self):
        self.assertEqual(format_document_number('INV', 2024, 7), 'INV-2024-007')
        self.assertEqual(format_document_number('PO', 2024, 1234), 'PO-2024-1234')

    def test_sequence_increments_per_prefix(self):
        first = TestDataFactory.create_invoice()
        second = TestDataFactory.create_invoice()
        bill = TestDataFactory.create_vendor_bill()
        self.assertEqual(first.number, f'INV-{self.year}-001')
        self.assertEqual(second.number, f'INV-{self.year}-002')
        self.assertEqual(bill.number, f'VB-{self.year}-001')

    def test_sequence_restarts_each_year(self):
        next_document_number('SO', year=self.year)
        self.assertEqual(next_document_number('SO', year=self.year - 1), f'SO-{self.year - 1}-001')
        sequence = DocumentSequence.objects.get(prefix='SO', year=self.year)
        self.assertEqual(sequence.last_value, 1)

    def test_expense_reference(self):
        expense = TestDataFactory.create_expense()
        self.assertEqual(expense.reference, f'EXP-{self.year}-001')

    def test_numbers_are_unique(self):
        numbers = {TestDataFactory.create_purchase_order().number for _ in range(5)}
        self.assertEqual(len(numbers), 5)

    def test_number_kept_on_resave(self):
        invoice = TestDataFactory.create_invoice()
        number = invoice.number
        invoice.title = 'Renamed'
        invoice.save()
        self.assertEqual(invoice.number, number)


class DocumentAPITests(TestCase):
    """Test line-item document endpoints"""

    def setUp(self):
        self.admin = TestDataFactory.create_admin()
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()
        self.project = TestDataFactory.create_project(manager=self.manager, team_members=[self.member])
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.manager)

    def invoice_payload(self, **overrides):
        payload = {
            'project': self.project.id,
            'client_name': 'Acme Corp',
            'tax_rate': '10.00',
            'lines': [
                {'description': 'Design', 'quantity': '2', 'unit_price': '50.00'},
                {'description': 'Hosting', 'quantity': '1', 'unit_price': '10.00'},
            ],
        }
        payload.update(overrides)
        return payload

    def test_create_invoice_computes_totals(self):
        response = self.client.post('/api/v1/billing/invoices/', self.invoice_payload(), format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['subtotal'], Decimal('110.00'))
        self.assertEqual(response.data['tax_amount'], Decimal('11.00'))
        self.assertEqual(response.data['total'], Decimal('121.00'))
        self.assertTrue(response.data['number'].startswith('INV-'))
        self.assertEqual([line['amount'] for line in response.data['lines']], [Decimal('100.00'), Decimal('10.00')])

    def test_create_invoice_updates_project_revenue(self):
        response = self.client.post('/api/v1/billing/invoices/', self.invoice_payload(), format='json')
        self.assertEqual(response['X-Financials-Status'], STATUS_UPDATED)
        self.assertEqual(response.data['financials']['revenue'], '121.00')
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('121.00'))
        self.assertEqual(self.project.profit, Decimal('121.00'))

    def test_client_supplied_totals_ignored(self):
        payload = self.invoice_payload(total='1.00', subtotal='1.00')
        response = self.client.post('/api/v1/billing/invoices/', payload, format='json')
        self.assertEqual(response.data['total'], Decimal('121.00'))

    def test_line_quantity_must_be_positive(self):
        payload = self.invoice_payload(lines=[{'description': 'Zero', 'quantity': '0', 'unit_price': '5.00'}])
        response = self.client.post('/api/v1/billing/invoices/', payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_duplicate_number_conflict(self):
        existing = TestDataFactory.create_invoice()
        response = self.client.post('/api/v1/billing/invoices/', self.invoice_payload(number=existing.number), format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['detail'].code, 'duplicate_number')
        self.assertEqual(Invoice.objects.count(), 1)

    def test_generated_number_skips_imported_number(self):
        year = timezone.localdate().year
        TestDataFactory.create_invoice(number=f'INV-{year}-001')
        codes = []
        numbers = []
        for _ in range(2):
            response = self.client.post('/api/v1/billing/invoices/', self.invoice_payload(), format='json')
            codes.append(response.status_code)
            numbers.append(response.data.get('number'))
        self.assertEqual(codes, [status.HTTP_201_CREATED, status.HTTP_201_CREATED])
        self.assertEqual(numbers, [f'INV-{year}-002', f'INV-{year}-003'])
        self.assertEqual(DocumentSequence.objects.get(prefix='INV', year=year).last_value, 3)

    def test_archived_project_rejected(self):
        archived = TestDataFactory.create_project(archived=True)
        response = self.client.post('/api/v1/billing/invoices/', self.invoice_payload(project=archived.id), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_replace_lines_recomputes_totals(self):
        invoice = TestDataFactory.create_invoice(project=self.project, lines=[(1, '100.00'), (1, '20.00')])
        response = self.client.patch(f'/api/v1/billing/invoices/{invoice.id}/', {
            'lines': [{'description': 'Single', 'quantity': '3', 'unit_price': '15.00'}],
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['lines']), 1)
        self.assertEqual(response.data['total'], Decimal('45.00'))
        self.assertEqual(InvoiceLine.objects.filter(document=invoice).count(), 1)
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('45.00'))

    def test_patch_without_lines_keeps_them(self):
        invoice = TestDataFactory.create_invoice(project=self.project, lines=[(1, '100.00')])
        response = self.client.patch(f'/api/v1/billing/invoices/{invoice.id}/', {'title': 'March work'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total'], Decimal('100.00'))

    def test_team_member_reads_but_cannot_write(self):
        TestDataFactory.create_invoice(project=self.project, lines=[(1, '10.00')])
        TestDataFactory.create_invoice(project=TestDataFactory.create_project(), lines=[(1, '10.00')])
        self.client.authenticate_user(self.member)

        response = self.client.get('/api/v1/billing/invoices/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)

        response = self.client.post('/api/v1/billing/invoices/', self.invoice_payload(), format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_only_admin_deletes(self):
        invoice = TestDataFactory.create_invoice(project=self.project)
        response = self.client.delete(f'/api/v1/billing/invoices/{invoice.id}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.authenticate_user(self.admin)
        response = self.client.delete(f'/api/v1/billing/invoices/{invoice.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['deleted'], invoice.number)

    def test_status_change_stamps_approval(self):
        bill = TestDataFactory.create_vendor_bill(project=self.project, lines=[(1, '80.00')])
        response = self.client.patch(f'/api/v1/billing/vendor-bills/{bill.id}/status/', {'status': 'approved'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        bill.refresh_from_db()
        self.assertEqual(bill.approved_by, self.manager)
        self.assertIsNotNone(bill.approved_at)

    def test_paid_status_sets_payment_date(self):
        invoice = TestDataFactory.create_invoice(project=self.project, lines=[(1, '80.00')])
        self.client.patch(f'/api/v1/billing/invoices/{invoice.id}/status/', {'status': 'paid'}, format='json')
        invoice.refresh_from_db()
        self.assertTrue(invoice.is_paid)
        self.assertEqual(invoice.payment_date, timezone.localdate())

    def test_unknown_status_rejected(self):
        order = TestDataFactory.create_sales_order(project=self.project)
        response = self.client.patch(f'/api/v1/billing/sales-orders/{order.id}/status/', {'status': 'paid'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_filters(self):
        linked = TestDataFactory.create_purchase_order(project=self.project, vendor_name='Paper Supplies Ltd')
        unlinked = TestDataFactory.create_purchase_order(status='approved')

        response = self.client.get('/api/v1/billing/purchase-orders/?unlinked=true')
        self.assertEqual([row['id'] for row in response.data['results']], [unlinked.id])

        response = self.client.get('/api/v1/billing/purchase-orders/?status=approved')
        self.assertEqual([row['id'] for row in response.data['results']], [unlinked.id])

        response = self.client.get('/api/v1/billing/purchase-orders/?search=paper')
        self.assertEqual([row['id'] for row in response.data['results']], [linked.id])

    def test_unknown_document_type_404(self):
        response = self.client.get('/api/v1/billing/quotes/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class ProjectRollupTests(TestCase):
    """Test that project revenue, cost and profit follow their documents"""

    def setUp(self):
        self.admin = TestDataFactory.create_admin()
        self.manager = TestDataFactory.create_manager()
        self.project = TestDataFactory.create_project(manager=self.manager)
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.admin)

    def create_invoice(self, amount, project=None):
        response = self.client.post('/api/v1/billing/invoices/', {
            'project': (project or self.project).id,
            'client_name': 'Acme Corp',
            'lines': [{'description': 'Work', 'quantity': '1', 'unit_price': amount}],
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        return response.data

    def test_invoices_sum_into_revenue(self):
        self.create_invoice('100.00')
        self.create_invoice('250.00')
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('350.00'))

    def test_moved_document_locks_lower_project_first(self):
        first = TestDataFactory.create_project()
        second = TestDataFactory.create_project()
        with mock.patch('backend.billing.rollup.recompute_project_financials',
                        side_effect=lambda pid, **kwargs: RollupResult(project_id=pid, status=STATUS_UPDATED)) as recompute:
            results = recompute_for_change(first.id, previous_project_id=second.id, kind='invoice')
        self.assertEqual([c.args[0] for c in recompute.call_args_list], [first.id, second.id])
        self.assertEqual([r.project_id for r in results], [first.id, second.id])

        with mock.patch('backend.billing.rollup.recompute_project_financials',
                        side_effect=lambda pid, **kwargs: RollupResult(project_id=pid, status=STATUS_UPDATED)) as recompute:
            results = recompute_for_change(second.id, previous_project_id=first.id, kind='invoice')
        self.assertEqual([c.args[0] for c in recompute.call_args_list], [first.id, second.id])
        self.assertEqual([r.project_id for r in results], [second.id, first.id])

    def test_equal_invoices_both_count(self):
        self.create_invoice('100.00')
        self.create_invoice('100.00')
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('200.00'))

    def test_cancelled_invoice_excluded(self):
        first = self.create_invoice('100.00')
        self.create_invoice('250.00')
        response = self.client.patch(f"/api/v1/billing/invoices/{first['id']}/status/", {'status': 'cancelled'}, format='json')
        self.assertEqual(response.data['financials']['revenue'], '250.00')
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('250.00'))

    def test_vendor_bill_delete_reduces_cost(self):
        bill = TestDataFactory.create_vendor_bill(project=self.project, lines=[(1, '300.00')])
        TestDataFactory.create_vendor_bill(project=self.project, lines=[(1, '50.00')])
        recompute_project_financials(self.project.id)
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('350.00'))

        response = self.client.delete(f'/api/v1/billing/vendor-bills/{bill.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('50.00'))
        self.assertEqual(self.project.profit, Decimal('-50.00'))

    def test_profit_is_revenue_minus_cost(self):
        self.create_invoice('1000.00')
        TestDataFactory.create_vendor_bill(project=self.project, lines=[(2, '150.00')])
        TestDataFactory.create_expense(project=self.project, amount=Decimal('75.00'), status='approved')
        TestDataFactory.create_timesheet(self.project, self.manager, hours=Decimal('2'), hourly_rate=Decimal('40.00'), approved=True)
        result = recompute_project_financials(self.project.id)
        self.assertEqual(result.status, STATUS_UPDATED)
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('455.00'))
        self.assertEqual(self.project.profit, Decimal('545.00'))

    def test_orders_not_counted_by_default(self):
        TestDataFactory.create_sales_order(project=self.project, lines=[(1, '500.00')])
        TestDataFactory.create_purchase_order(project=self.project, lines=[(1, '200.00')])
        recompute_project_financials(self.project.id)
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('0.00'))
        self.assertEqual(self.project.cost, Decimal('0.00'))

    @override_settings(PROJECT_FINANCIALS={'REVENUE_SOURCES': ['sales_order'], 'COST_SOURCES': ['purchase_order']})
    def test_configured_sources(self):
        TestDataFactory.create_sales_order(project=self.project, lines=[(1, '500.00')])
        TestDataFactory.create_purchase_order(project=self.project, lines=[(1, '200.00')])
        TestDataFactory.create_invoice(project=self.project, lines=[(1, '999.00')])
        recompute_project_financials(self.project.id)
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('500.00'))
        self.assertEqual(self.project.cost, Decimal('200.00'))

    @override_settings(PROJECT_FINANCIALS={'REVENUE_SOURCES': ['donations']})
    def test_unknown_source_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            get_sources()

    def test_link_project_moves_revenue(self):
        other = TestDataFactory.create_project()
        invoice = self.create_invoice('120.00')
        response = self.client.patch(f"/api/v1/billing/invoices/{invoice['id']}/link-project/", {'project': other.id}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['financials']['previous_project']['revenue'], '0.00')

        self.project.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('0.00'))
        self.assertEqual(other.revenue, Decimal('120.00'))

    def test_unlink_project(self):
        invoice = self.create_invoice('120.00')
        response = self.client.patch(f"/api/v1/billing/invoices/{invoice['id']}/link-project/", {'project': None}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['X-Financials-Status'], STATUS_SKIPPED)
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('0.00'))

    def test_link_project_admin_only(self):
        invoice = self.create_invoice('120.00')
        self.client.authenticate_user(self.manager)
        response = self.client.patch(f"/api/v1/billing/invoices/{invoice['id']}/link-project/", {'project': None}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_failed_rollup_reports_stale_and_keeps_document(self):
        with mock.patch('backend.billing.rollup.compute_financials', side_effect=RuntimeError('database hiccup')):
            response = self.client.post('/api/v1/billing/invoices/', {
                'project': self.project.id,
                'client_name': 'Acme Corp',
                'lines': [{'description': 'Work', 'quantity': '1', 'unit_price': '100.00'}],
            }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response['X-Financials-Status'], STATUS_STALE)
        self.assertEqual(response.data['financials']['error'], 'database hiccup')
        self.assertTrue(Invoice.objects.filter(pk=response.data['id']).exists())
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('0.00'))

        # A later recompute catches up
        result = recompute_project_financials(self.project.id)
        self.assertTrue(result.ok)
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('100.00'))

    def test_manual_recompute_endpoint(self):
        TestDataFactory.create_invoice(project=self.project, lines=[(1, '40.00')])
        response = self.client.post(f'/api/v1/projects/{self.project.id}/recompute/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['revenue'], '40.00')

        with mock.patch('backend.billing.rollup.compute_financials', side_effect=RuntimeError('boom')):
            response = self.client.post(f'/api/v1/projects/{self.project.id}/recompute/')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response['X-Financials-Status'], STATUS_STALE)

    def test_recompute_missing_project_skipped(self):
        result = recompute_project_financials(987654)
        self.assertEqual(result.status, STATUS_SKIPPED)
        self.assertTrue(result.ok)

    def test_recompute_writes_audit_entry_only_on_change(self):
        TestDataFactory.create_invoice(project=self.project, lines=[(1, '40.00')])
        recompute_project_financials(self.project.id, kind='manual', user=self.admin)
        recompute_project_financials(self.project.id, kind='manual', user=self.admin)
        entries = AuditLog.objects.filter(action='financials_recompute', object_id=self.project.id)
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries.get().changes['revenue']['new'], '40.00')

    def test_recompute_is_idempotent(self):
        TestDataFactory.create_invoice(project=self.project, lines=[(3, '12.34')])
        first = recompute_project_financials(self.project.id)
        second = recompute_project_financials(self.project.id)
        self.assertEqual((first.revenue, first.cost, first.profit), (second.revenue, second.cost, second.profit))
        self.assertEqual(compute_financials(self.project.id)[0], Decimal('37.02'))


class ExpenseTests(TestCase):
    """Test expense submission, approval and cost roll-up"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()
        self.project = TestDataFactory.create_project(manager=self.manager, team_members=[self.member])
        self.client = AuthenticatedAPIClient()

    def submit(self, amount='75.00'):
        self.client.authenticate_user(self.member)
        response = self.client.post('/api/v1/billing/expenses/', {
            'title': 'Train tickets',
            'project': self.project.id,
            'amount': amount,
            'category': 'travel',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        return response.data

    def test_submitted_expense_does_not_count(self):
        data = self.submit()
        self.assertEqual(data['status'], 'submitted')
        self.assertTrue(data['reference'].startswith('EXP-'))
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('0.00'))

    def test_approved_expense_adds_cost(self):
        data = self.submit()
        self.client.authenticate_user(self.manager)
        response = self.client.patch(f"/api/v1/billing/expenses/{data['id']}/approve/", {'status': 'approved'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('75.00'))
        self.assertEqual(self.project.profit, Decimal('-75.00'))
        self.assertTrue(AuditLog.objects.filter(action='expense_approve', object_id=data['id']).exists())

    def test_rejected_expense_has_no_effect(self):
        data = self.submit()
        self.client.authenticate_user(self.manager)
        self.client.patch(f"/api/v1/billing/expenses/{data['id']}/approve/", {'status': 'rejected'}, format='json')
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('0.00'))

    def test_paid_expense_still_counts(self):
        data = self.submit()
        self.client.authenticate_user(self.manager)
        self.client.patch(f"/api/v1/billing/expenses/{data['id']}/approve/", {'status': 'approved'}, format='json')
        response = self.client.patch(f"/api/v1/billing/expenses/{data['id']}/status/", {'status': 'paid'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('75.00'))
        self.assertEqual(Expense.objects.get(pk=data['id']).payment_date, timezone.localdate())

    def test_member_cannot_approve(self):
        data = self.submit()
        response = self.client.patch(f"/api/v1/billing/expenses/{data['id']}/approve/", {'status': 'approved'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_member_cannot_edit_approved_expense(self):
        expense = TestDataFactory.create_expense(project=self.project, user=self.member, status='approved')
        self.client.authenticate_user(self.member)
        response = self.client.patch(f'/api/v1/billing/expenses/{expense.id}/', {'amount': '1.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_member_cannot_move_expense_to_foreign_project(self):
        foreign = TestDataFactory.create_project()
        expense = TestDataFactory.create_expense(project=self.project, user=self.member)
        self.client.authenticate_user(self.member)
        response = self.client.patch(f'/api/v1/billing/expenses/{expense.id}/', {'project': foreign.id}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        expense.refresh_from_db()
        self.assertEqual(expense.project_id, self.project.id)

    def test_member_can_edit_own_expense_in_project(self):
        expense = TestDataFactory.create_expense(project=self.project, user=self.member)
        self.client.authenticate_user(self.member)
        response = self.client.patch(f'/api/v1/billing/expenses/{expense.id}/', {'project': self.project.id, 'amount': '15.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['amount'], Decimal('15.00'))

    def test_member_sees_only_own_expenses(self):
        mine = TestDataFactory.create_expense(project=self.project, user=self.member)
        TestDataFactory.create_expense(project=self.project, user=self.manager)
        self.client.authenticate_user(self.member)
        response = self.client.get('/api/v1/billing/expenses/')
        self.assertEqual([row['id'] for row in response.data['results']], [mine.id])

    def test_delete_approved_expense_reduces_cost(self):
        expense = TestDataFactory.create_expense(project=self.project, amount=Decimal('30.00'), status='approved')
        recompute_project_financials(self.project.id)
        self.client.authenticate_user(self.manager)
        response = self.client.delete(f'/api/v1/billing/expenses/{expense.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('0.00'))

    def test_member_cannot_submit_to_foreign_project(self):
        foreign = TestDataFactory.create_project()
        self.client.authenticate_user(self.member)
        response = self.client.post('/api/v1/billing/expenses/', {
            'title': 'Lunch', 'project': foreign.id, 'amount': '12.00',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_filter_by_category(self):
        TestDataFactory.create_expense(project=self.project, category='meals')
        travel = TestDataFactory.create_expense(project=self.project, category='travel')
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/billing/expenses/?category=travel')
        self.assertEqual([row['id'] for row in response.data['results']], [travel.id])


class ProductTests(TestCase):
    """Test product catalog endpoints"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.manager)

    def test_create_product(self):
        response = self.client.post('/api/v1/billing/products/', {
            'name': 'Consulting hour', 'sales_price': '120.00', 'can_be_sold': True,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

    def test_product_needs_a_usage(self):
        response = self.client.post('/api/v1/billing/products/', {
            'name': 'Nothing', 'can_be_sold': False, 'can_be_purchased': False, 'can_be_expensed': False,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_delete_deactivates(self):
        product = TestDataFactory.create_product()
        response = self.client.delete(f'/api/v1/billing/products/{product.id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        product.refresh_from_db()
        self.assertFalse(product.active)

        response = self.client.get('/api/v1/billing/products/')
        self.assertEqual(response.data, [])
        response = self.client.get('/api/v1/billing/products/?include_inactive=true')
        self.assertEqual(len(response.data), 1)

    def test_line_keeps_product(self):
        product = TestDataFactory.create_product()
        invoice = TestDataFactory.create_invoice()
        invoice.lines.create(product=product, description=product.name, quantity=Decimal('2'), unit_price=product.sales_price)
        invoice.recalculate_totals()
        self.assertEqual(invoice.total, Decimal('20.00'))
        self.assertEqual(Product.objects.filter(active=True).count(), 1)


@skipUnlessDBFeature('has_select_for_update')
class ConcurrentRollupTests(TransactionTestCase):
    """Concurrent document creation against one project (needs row locks, e.g. PostgreSQL)"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.project = TestDataFactory.create_project(manager=self.manager)
        # Sequence row exists up front so both requests contend on the same lock
        next_document_number('INV')

    def post_invoices_concurrently(self, amounts):
        barrier = threading.Barrier(len(amounts))
        responses = []
        errors = []

        def post_invoice(amount):
            client = AuthenticatedAPIClient()
            client.authenticate_user(self.manager)
            try:
                barrier.wait(timeout=10)
                responses.append(client.post('/api/v1/billing/invoices/', {
                    'project': self.project.id,
                    'client_name': 'Acme Corp',
                    'lines': [{'description': 'Work', 'quantity': '1', 'unit_price': amount}],
                }, format='json'))
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=post_invoice, args=(amount,)) for amount in amounts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        self.assertEqual(errors, [])
        return responses

    def test_parallel_invoices_both_count(self):
        responses = self.post_invoices_concurrently(['100.00', '100.00'])
        self.assertEqual([r.status_code for r in responses], [status.HTTP_201_CREATED] * 2)
        self.assertEqual([r['X-Financials-Status'] for r in responses], [STATUS_UPDATED] * 2)
        numbers = {r.data['number'] for r in responses}
        self.assertEqual(len(numbers), 2)

        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('200.00'))
        self.assertEqual(self.project.profit, Decimal('200.00'))


class RecomputeCommandTests(TestCase):
    """Test the recompute_project_financials management command"""

    def setUp(self):
        self.project = TestDataFactory.create_project()
        TestDataFactory.create_invoice(project=self.project, lines=[(1, '500.00')])
        TestDataFactory.create_vendor_bill(project=self.project, lines=[(1, '120.00')])
        # Figures drifted away from the documents
        Project.objects.filter(pk=self.project.pk).update(revenue=Decimal('1.00'), cost=Decimal('2.00'), profit=Decimal('-1.00'))

    def test_command_repairs_figures(self):
        out = StringIO()
        call_command('recompute_project_financials', stdout=out)
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('500.00'))
        self.assertEqual(self.project.cost, Decimal('120.00'))
        self.assertEqual(self.project.profit, Decimal('380.00'))
        self.assertIn('1 project(s) updated', out.getvalue())

    def test_dry_run_changes_nothing(self):
        out = StringIO()
        call_command('recompute_project_financials', '--dry-run', stdout=out)
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('1.00'))
        self.assertIn('1 project(s) would change', out.getvalue())

    def test_single_project(self):
        other = TestDataFactory.create_project()
        Project.objects.filter(pk=other.pk).update(revenue=Decimal('9.00'))
        call_command('recompute_project_financials', '--project', str(self.project.pk), stdout=StringIO())
        other.refresh_from_db()
        self.assertEqual(other.revenue, Decimal('9.00'))

    def test_unknown_project(self):
        with self.assertRaises(CommandError):
            call_command('recompute_project_financials', '--project', '987654', stdout=StringIO())

    def test_archived_skipped_by_default(self):
        Project.objects.filter(pk=self.project.pk).update(archived=True)
        call_command('recompute_project_financials', stdout=StringIO())
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('1.00'))

        call_command('recompute_project_financials', '--include-archived', stdout=StringIO())
        self.project.refresh_from_db()
        self.assertEqual(self.project.revenue, Decimal('500.00'))
