"""
Test utilities and factories for creating test data
"""
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken
from backend.projects.models import Project, Task, Timesheet
from backend.billing.models import (
    Product, SalesOrder, Invoice, PurchaseOrder, VendorBill, Expense
)
from decimal import Decimal
from django.utils import timezone
import random
import string

User = get_user_model()


class TestDataFactory:
    """Factory class for creating test data"""

    @staticmethod
    def random_string(length=10):
        """Generate a random string"""
        return ''.join(random.choices(string.ascii_letters + string.digits, k=length))

    @staticmethod
    def create_user(username=None, email=None, password='testpass123', role=User.ROLE_TEAM,
                    hourly_rate=Decimal('0.00'), is_superuser=False):
        """Create a test user"""
        if not username:
            username = f'testuser_{TestDataFactory.random_string(6)}'
        if not email:
            email = f'{username}@test.com'
        return User.objects.create_user(
            username=username,
            email=email,
            password=password,
            role=role,
            hourly_rate=hourly_rate,
            is_superuser=is_superuser,
            is_staff=is_superuser
        )

    @staticmethod
    def create_admin(**kwargs):
        return TestDataFactory.create_user(role=User.ROLE_ADMIN, **kwargs)

    @staticmethod
    def create_manager(**kwargs):
        return TestDataFactory.create_user(role=User.ROLE_MANAGER, **kwargs)

    @staticmethod
    def create_project(name=None, code=None, manager=None, created_by=None, team_members=None,
                       budget=Decimal('0.00'), status='in_progress', archived=False):
        """Create a test project"""
        if not name:
            name = f'Project_{TestDataFactory.random_string(6)}'
        project = Project.objects.create(
            name=name,
            code=code,
            client='Test Client',
            manager=manager,
            created_by=created_by,
            budget=budget,
            status=status,
            archived=archived
        )
        if team_members:
            project.team_members.set(team_members)
        return project

    @staticmethod
    def create_task(project, title=None, assigned_to=None, status='todo', estimated_hours=Decimal('0.00'), due_date=None):
        """Create a test task"""
        return Task.objects.create(
            project=project,
            title=title or f'Task_{TestDataFactory.random_string(6)}',
            assigned_to=assigned_to,
            status=status,
            estimated_hours=estimated_hours,
            due_date=due_date
        )

    @staticmethod
    def create_timesheet(project, user, hours=Decimal('1.00'), task=None, hourly_rate=None,
                         approved=False, billable=True, date=None):
        """Create a test timesheet; the user's rate is used when ``hourly_rate`` is omitted"""
        return Timesheet.objects.create(
            project=project,
            user=user,
            task=task,
            hours=hours,
            hourly_rate=hourly_rate,
            approved=approved,
            billable=billable,
            date=date or timezone.localdate()
        )

    @staticmethod
    def create_product(name=None, sales_price=Decimal('10.00'), cost=Decimal('6.00'), can_be_purchased=True):
        """Create a test product"""
        if not name:
            name = f'Product_{TestDataFactory.random_string(6)}'
        return Product.objects.create(
            name=name,
            sales_price=sales_price,
            cost=cost,
            can_be_purchased=can_be_purchased
        )

    @staticmethod
    def create_document(model, project=None, lines=None, status='draft', tax_rate=Decimal('0.00'), user=None, **fields):
        """
        Create a financial document with lines
        ``lines`` is a list of (quantity, unit_price) pairs; totals are recalculated afterwards
        """
        counterparty = model.COUNTERPARTY_FIELD
        fields.setdefault(counterparty, f'Party_{TestDataFactory.random_string(6)}')
        document = model.objects.create(
            project=project,
            status=status,
            tax_rate=tax_rate,
            created_by=user,
            **fields
        )
        for position, (quantity, unit_price) in enumerate(lines or []):
            document.lines.create(
                description=f'Line {position + 1}',
                quantity=Decimal(str(quantity)),
                unit_price=Decimal(str(unit_price)),
                position=position
            )
        if lines:
            document.recalculate_totals()
        return document

    @staticmethod
    def create_sales_order(project=None, lines=None, **kwargs):
        return TestDataFactory.create_document(SalesOrder, project=project, lines=lines, **kwargs)

    @staticmethod
    def create_invoice(project=None, lines=None, **kwargs):
        """Create a test invoice"""
        return TestDataFactory.create_document(Invoice, project=project, lines=lines, **kwargs)

    @staticmethod
    def create_purchase_order(project=None, lines=None, **kwargs):
        return TestDataFactory.create_document(PurchaseOrder, project=project, lines=lines, **kwargs)

    @staticmethod
    def create_vendor_bill(project=None, lines=None, **kwargs):
        """Create a test vendor bill"""
        return TestDataFactory.create_document(VendorBill, project=project, lines=lines, **kwargs)

    @staticmethod
    def create_expense(project=None, user=None, amount=Decimal('10.00'), status='submitted', category='travel', date=None):
        """Create a test expense"""
        return Expense.objects.create(
            title=f'Expense_{TestDataFactory.random_string(6)}',
            project=project,
            user=user,
            amount=amount,
            status=status,
            category=category,
            date=date or timezone.localdate()
        )


class AuthenticatedAPIClient(APIClient):
    """APIClient with authentication helper"""

    def authenticate_user(self, user):
        """Authenticate the client with a user"""
        refresh = RefreshToken.for_user(user)
        self.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
        return self

    def logout(self):
        """Remove authentication"""
        self.credentials()
