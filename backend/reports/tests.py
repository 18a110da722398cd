"""
Test suite for the reports module
Tests: Financial summary, Project performance, Expense breakdown, Time utilization, Project stats
"""
from datetime import timedelta
from decimal import Decimal

from django.core.cache import cache
from django.test import TestCase
from django.utils import timezone
from rest_framework import status

from backend.billing.rollup import recompute_project_financials
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient


class ReportsTests(TestCase):
    """Test report endpoints"""

    def setUp(self):
        cache.clear()
        self.admin = TestDataFactory.create_admin()
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user(hourly_rate=Decimal('50.00'))

        self.project = TestDataFactory.create_project(manager=self.manager, team_members=[self.member], budget=Decimal('1000.00'))
        self.other_project = TestDataFactory.create_project(manager=self.admin)

        TestDataFactory.create_invoice(project=self.project, lines=[(1, '600.00')], status='sent')
        TestDataFactory.create_invoice(project=self.project, lines=[(1, '100.00')], status='cancelled')
        TestDataFactory.create_vendor_bill(project=self.project, lines=[(1, '200.00')], status='approved')
        TestDataFactory.create_expense(project=self.project, amount=Decimal('50.00'), status='approved', category='travel')
        TestDataFactory.create_expense(project=self.project, amount=Decimal('30.00'), status='paid', category='meals')
        TestDataFactory.create_expense(project=self.project, amount=Decimal('999.00'), status='rejected', category='travel')
        TestDataFactory.create_timesheet(self.project, self.member, hours=Decimal('4.00'), approved=True)
        TestDataFactory.create_timesheet(self.project, self.member, hours=Decimal('2.00'), billable=False)
        TestDataFactory.create_invoice(project=self.other_project, lines=[(1, '5000.00')])

        recompute_project_financials(self.project.id)
        recompute_project_financials(self.other_project.id)

        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.admin)

    def test_financial_summary(self):
        """Admins see every active project"""
        response = self.client.get('/api/v1/reports/financial-summary/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        summary = response.data['summary']
        self.assertEqual(summary['projects'], 2)
        self.assertEqual(summary['revenue'], 5600.0)
        # 200 bill + 80 expenses + 200 approved time
        self.assertEqual(summary['cost'], 480.0)
        self.assertEqual(response.data['receivables']['outstanding'], 600.0)
        self.assertEqual(response.data['payables']['outstanding'], 200.0)
        self.assertEqual(response.data['expenses']['approved'], 80.0)

    def test_financial_summary_scoped_to_manager(self):
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/reports/financial-summary/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary']['projects'], 1)
        self.assertEqual(response.data['summary']['revenue'], 600.0)

    def test_financial_summary_trend_excludes_cancelled(self):
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/reports/financial-summary/')
        trend = response.data['monthly_trend']
        self.assertEqual(len(trend), 1)
        self.assertEqual(trend[0]['revenue'], 600.0)
        self.assertEqual(trend[0]['cost'], 280.0)

    def test_financial_summary_with_date_range(self):
        response = self.client.get('/api/v1/reports/financial-summary/?date_from=2020-01-01&date_to=2020-12-31')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['invoices_by_status'], [])

    def test_invalid_date_rejected(self):
        response = self.client.get('/api/v1/reports/financial-summary/?date_from=yesterday')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_team_member_forbidden(self):
        self.client.authenticate_user(self.member)
        response = self.client.get('/api/v1/reports/financial-summary/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_project_performance(self):
        response = self.client.get('/api/v1/reports/project-performance/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        # Most profitable first
        self.assertEqual(response.data['results'][0]['id'], self.other_project.id)

        row = response.data['results'][1]
        self.assertEqual(row['revenue'], 600.0)
        self.assertEqual(row['cost'], 480.0)
        self.assertEqual(row['profit'], 120.0)
        self.assertEqual(row['margin'], 20.0)
        self.assertEqual(row['budget_used_percent'], 48.0)
        self.assertFalse(row['over_budget'])

    def test_expense_breakdown(self):
        response = self.client.get('/api/v1/reports/expense-breakdown/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total'], 80.0)
        categories = {row['category']: row for row in response.data['categories']}
        self.assertEqual(set(categories), {'travel', 'meals'})
        self.assertEqual(categories['travel']['total'], 50.0)
        self.assertEqual(categories['travel']['share_percent'], 62.5)

    def test_time_utilization(self):
        response = self.client.get('/api/v1/reports/time-utilization/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary']['hours'], 6.0)
        self.assertEqual(response.data['summary']['billable_hours'], 4.0)
        user_row = response.data['users'][0]
        self.assertEqual(user_row['username'], self.member.username)
        self.assertEqual(user_row['approved_cost'], 200.0)
        self.assertEqual(user_row['utilization_percent'], 66.67)

    def test_project_stats(self):
        TestDataFactory.create_task(self.project, status='completed')
        TestDataFactory.create_task(self.project, due_date=timezone.localdate() - timedelta(days=2))
        response = self.client.get(f'/api/v1/reports/projects/{self.project.id}/stats/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['tasks']['total'], 2)
        self.assertEqual(response.data['tasks']['by_status']['completed'], 1)
        self.assertEqual(response.data['tasks']['overdue'], 1)
        self.assertEqual(response.data['documents']['invoices'], 2)
        self.assertEqual(response.data['documents']['expenses'], 3)
        self.assertEqual(response.data['time']['pending_approval'], 1)
        self.assertEqual(response.data['financials']['profit'], 120.0)

    def test_project_stats_visible_to_member(self):
        self.client.authenticate_user(self.member)
        response = self.client.get(f'/api/v1/reports/projects/{self.project.id}/stats/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        response = self.client.get(f'/api/v1/reports/projects/{self.other_project.id}/stats/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_report_cache_invalidated_by_changes(self):
        self.client.get('/api/v1/reports/project-performance/')
        with self.captureOnCommitCallbacks(execute=True):
            TestDataFactory.create_project(name='Late arrival')
        response = self.client.get('/api/v1/reports/project-performance/')
        self.assertEqual(response.data['count'], 3)
