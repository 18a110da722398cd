"""
Test suite for the core module
Tests: Authentication, Users, Hourly rates, Audit logs, Report cache versioning
"""
from decimal import Decimal
from unittest import mock

from django.core.cache import cache
from django.db import connection, transaction
from django.test import TestCase
from rest_framework import status

from backend.core.cache_utils import get_reports_version, get_cached_report, cache_report
from backend.core.cache_signals import suspend_cache_signals
from backend.core.models import User, AuditLog
from backend.core.money import quantize_money, to_decimal
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.core.utils import create_audit_log


class AuthenticationTests(TestCase):
    """Test registration and JWT login"""

    def setUp(self):
        self.client = AuthenticatedAPIClient()

    def test_register_creates_team_member(self):
        response = self.client.post('/api/v1/auth/register/', {
            'username': 'newcomer',
            'email': 'newcomer@test.com',
            'password': 'Str0ngPass!2026',
            'password_confirm': 'Str0ngPass!2026',
        })
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertIn('access', response.data)
        self.assertEqual(response.data['user']['role'], User.ROLE_TEAM)

    def test_register_ignores_requested_role(self):
        response = self.client.post('/api/v1/auth/register/', {
            'username': 'sneaky',
            'email': 'sneaky@test.com',
            'password': 'Str0ngPass!2026',
            'password_confirm': 'Str0ngPass!2026',
            'role': User.ROLE_ADMIN,
        })
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(User.objects.get(username='sneaky').role, User.ROLE_TEAM)

    def test_register_password_mismatch(self):
        response = self.client.post('/api/v1/auth/register/', {
            'username': 'mismatch',
            'email': 'mismatch@test.com',
            'password': 'Str0ngPass!2026',
            'password_confirm': 'Different!2026',
        })
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_login_returns_tokens_and_user(self):
        TestDataFactory.create_manager(username='boss', password='Str0ngPass!2026')
        response = self.client.post('/api/v1/auth/login/', {'username': 'boss', 'password': 'Str0ngPass!2026'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('refresh', response.data)
        self.assertEqual(response.data['user']['role'], User.ROLE_MANAGER)

    def test_login_wrong_password(self):
        TestDataFactory.create_user(username='someone')
        response = self.client.post('/api/v1/auth/login/', {'username': 'someone', 'password': 'wrong'})
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_unauthenticated_access_rejected(self):
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_me_reports_access_flags(self):
        user = TestDataFactory.create_user()
        self.client.authenticate_user(user)
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['can_manage'])
        self.assertFalse(response.data['is_admin'])


class UserTests(TestCase):
    """Test user management endpoints"""

    def setUp(self):
        self.admin = TestDataFactory.create_admin()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.admin)

    def test_list_users(self):
        TestDataFactory.create_manager()
        response = self.client.get('/api/v1/users/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 2)

    def test_filter_users_by_role(self):
        TestDataFactory.create_manager()
        TestDataFactory.create_user()
        response = self.client.get('/api/v1/users/?role=manager')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([u['role'] for u in response.data], [User.ROLE_MANAGER])

    def test_create_user_with_role(self):
        response = self.client.post('/api/v1/users/', {
            'username': 'pm',
            'email': 'pm@test.com',
            'password': 'Str0ngPass!2026',
            'password_confirm': 'Str0ngPass!2026',
            'role': User.ROLE_MANAGER,
            'hourly_rate': '80.00',
        })
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        user = User.objects.get(username='pm')
        self.assertEqual(user.role, User.ROLE_MANAGER)
        self.assertEqual(user.hourly_rate, Decimal('80.00'))
        self.assertTrue(AuditLog.objects.filter(model_name='User', action='create', object_id=user.id).exists())

    def test_non_admin_cannot_list_users(self):
        manager = TestDataFactory.create_manager()
        self.client.authenticate_user(manager)
        response = self.client.get('/api/v1/users/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_set_hourly_rate(self):
        user = TestDataFactory.create_user()
        response = self.client.put(f'/api/v1/users/{user.id}/hourly-rate/', {'hourly_rate': '42.50'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        user.refresh_from_db()
        self.assertEqual(user.hourly_rate, Decimal('42.50'))

    def test_negative_hourly_rate_rejected(self):
        user = TestDataFactory.create_user()
        response = self.client.put(f'/api/v1/users/{user.id}/hourly-rate/', {'hourly_rate': '-1'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_cannot_delete_self(self):
        response = self.client.delete(f'/api/v1/users/{self.admin.id}/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_delete_user(self):
        user = TestDataFactory.create_user()
        response = self.client.delete(f'/api/v1/users/{user.id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(User.objects.filter(pk=user.id).exists())

    def test_superuser_counts_as_admin(self):
        root = TestDataFactory.create_user(is_superuser=True)
        self.assertTrue(root.is_admin_role)
        self.assertTrue(root.can_manage)


class AuditLogTests(TestCase):
    """Test audit log visibility"""

    def setUp(self):
        self.admin = TestDataFactory.create_admin()
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        AuditLog.objects.create(user=self.admin, action='create', model_name='Project', object_id=1)
        self.own_entry = AuditLog.objects.create(user=self.user, action='create', model_name='Expense', object_id=2)

    def test_admin_sees_all_entries(self):
        self.client.authenticate_user(self.admin)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 2)

    def test_user_sees_only_own_entries(self):
        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([entry['id'] for entry in response.data], [self.own_entry.id])

    def test_filter_by_model(self):
        self.client.authenticate_user(self.admin)
        response = self.client.get('/api/v1/audit-logs/?model=Project')
        self.assertEqual(len(response.data), 1)

    def test_user_cannot_read_foreign_entry(self):
        other = AuditLog.objects.filter(user=self.admin).first()
        self.client.authenticate_user(self.user)
        response = self.client.get(f'/api/v1/audit-logs/{other.id}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_changes_accept_decimals(self):
        entry = AuditLog.objects.create(
            user=self.admin, action='update', model_name='User', object_id=3,
            changes={'hourly_rate': {'old': Decimal('10.00'), 'new': Decimal('12.50')}}
        )
        entry.refresh_from_db()
        self.assertEqual(entry.changes['hourly_rate']['new'], '12.50')

    def test_failed_insert_leaves_transaction_usable(self):
        def broken_insert(**kwargs):
            with connection.cursor() as cursor:
                cursor.execute('SELECT * FROM audit_table_that_does_not_exist')

        with transaction.atomic():
            with mock.patch.object(AuditLog.objects, 'create', side_effect=broken_insert):
                entry = create_audit_log(user=self.admin, action='update', model_name='Project', object_id=1)
            self.assertIsNone(entry)
            # Further queries in the same transaction still work
            self.assertEqual(AuditLog.objects.count(), 2)
            self.assertTrue(User.objects.filter(pk=self.admin.pk).exists())


class MoneyTests(TestCase):
    """Test money rounding helpers"""

    def test_quantize_rounds_half_up(self):
        self.assertEqual(quantize_money(Decimal('2.005')), Decimal('2.01'))
        self.assertEqual(quantize_money(Decimal('2.004')), Decimal('2.00'))

    def test_to_decimal_handles_none_and_strings(self):
        self.assertEqual(to_decimal(None), Decimal('0'))
        self.assertEqual(to_decimal('1.5'), Decimal('1.5'))


class ReportCacheTests(TestCase):
    """Test versioned report cache invalidation"""

    def setUp(self):
        cache.clear()

    def test_cached_report_roundtrip(self):
        data, key = get_cached_report('example', 'all')
        self.assertIsNone(data)
        cache_report(key, {'value': 1})
        data, _ = get_cached_report('example', 'all')
        self.assertEqual(data, {'value': 1})

    def test_project_save_bumps_version_after_commit(self):
        version = get_reports_version()
        with self.captureOnCommitCallbacks(execute=True):
            TestDataFactory.create_project()
        self.assertGreater(get_reports_version(), version)

    def test_suspended_signals_keep_version(self):
        version = get_reports_version()
        with self.captureOnCommitCallbacks(execute=True):
            with suspend_cache_signals():
                TestDataFactory.create_project()
        self.assertEqual(get_reports_version(), version)
