import logging
from decimal import Decimal

from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models, transaction, IntegrityError
from django.utils import timezone

from backend.core.models import User
from backend.projects.models import Project
from .calculations import compute_line_amount, compute_document_totals
from .exceptions import DuplicateDocumentNumber
from .numbering import next_document_number

logger = logging.getLogger(__name__)

PAYMENT_METHOD_CHOICES = [
    ('bank_transfer', 'Bank Transfer'),
    ('card', 'Card'),
    ('cash', 'Cash'),
    ('upi', 'UPI'),
    ('other', 'Other'),
]


class Product(models.Model):
    """Catalog item that can be picked on document lines"""
    name = models.CharField(max_length=255, unique=True)
    can_be_sold = models.BooleanField(default=True)
    can_be_purchased = models.BooleanField(default=False)
    can_be_expensed = models.BooleanField(default=False)
    sales_price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'), validators=[MinValueValidator(Decimal('0.00'))])
    sales_tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'), validators=[MinValueValidator(Decimal('0.00')), MaxValueValidator(Decimal('100.00'))])
    cost = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'), validators=[MinValueValidator(Decimal('0.00'))])
    unit = models.CharField(max_length=50, default='Unit')
    description = models.TextField(blank=True)
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'products'
        ordering = ['name']

    def __str__(self):
        return self.name


class DocumentSequence(models.Model):
    """Per-prefix, per-year counter behind document numbers"""
    prefix = models.CharField(max_length=10)
    year = models.PositiveIntegerField()
    last_value = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'document_sequences'
        constraints = [
            models.UniqueConstraint(fields=['prefix', 'year'], name='uniq_document_sequence_prefix_year'),
        ]

    def __str__(self):
        return f"{self.prefix}-{self.year}: {self.last_value}"


class NumberedDocumentMixin:
    """
    Assigns a number on first save.

    A generated number that is already taken (a document imported with an
    explicit number ahead of the sequence) is skipped by drawing the next
    value. A number supplied by the caller that is taken raises
    ``DuplicateDocumentNumber``.
    """
    NUMBER_PREFIX = None
    NUMBER_FIELD = 'number'
    MAX_NUMBER_ATTEMPTS = 10

    def assign_number(self):
        if not getattr(self, self.NUMBER_FIELD):
            setattr(self, self.NUMBER_FIELD, next_document_number(self.NUMBER_PREFIX))
            return True
        return False

    def number_taken(self, number):
        return type(self)._default_manager.filter(**{self.NUMBER_FIELD: number}).exclude(pk=self.pk).exists()

    def save_with_number(self, *args, **kwargs):
        generated = self.assign_number()
        for attempt in range(1, self.MAX_NUMBER_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    models.Model.save(self, *args, **kwargs)
                return
            except IntegrityError as exc:
                number = getattr(self, self.NUMBER_FIELD)
                if not self.number_taken(number):
                    raise
                if not generated or attempt == self.MAX_NUMBER_ATTEMPTS:
                    raise DuplicateDocumentNumber(f"{type(self).__name__} number {number} already exists.") from exc
                logger.warning(f"Generated {type(self).__name__} number {number} is taken, drawing the next one")
                setattr(self, self.NUMBER_FIELD, next_document_number(self.NUMBER_PREFIX))


class FinancialDocument(NumberedDocumentMixin, models.Model):
    """Common fields of sales orders, invoices, purchase orders and vendor bills"""
    ROLLUP_KIND = None
    STATUS_CHOICES = []
    CANCELLED_STATUS = 'cancelled'
    APPROVAL_STATUSES = ()
    PAID_STATUSES = ()
    COUNTERPARTY_FIELD = None

    number = models.CharField(max_length=50, unique=True, blank=True)
    title = models.CharField(max_length=255, blank=True)
    project = models.ForeignKey(Project, on_delete=models.SET_NULL, null=True, blank=True, related_name='%(class)ss')
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'), validators=[MinValueValidator(Decimal('0.00')), MaxValueValidator(Decimal('100.00'))])
    tax_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    notes = models.TextField(blank=True)
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='created_%(class)ss')
    approved_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='approved_%(class)ss')
    approved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def __str__(self):
        return self.number or f"{type(self).__name__}-{self.pk}"

    def save(self, *args, **kwargs):
        # Partial saves (status changes) leave totals alone
        if kwargs.get('update_fields') is None:
            self.apply_totals(self.stored_lines())
        self.save_with_number(*args, **kwargs)

    def stored_lines(self):
        """Lines as persisted, bypassing any prefetch cache"""
        if not self.pk:
            return []
        return list(self.lines.model.objects.filter(document_id=self.pk))

    def apply_totals(self, lines):
        totals = compute_document_totals(
            [(line.quantity, line.unit_price) for line in lines], self.tax_rate
        )
        self.subtotal = totals.subtotal
        self.tax_amount = totals.tax_amount
        self.total = totals.total
        return totals

    def recalculate_totals(self):
        """Recompute totals from the stored lines and persist them"""
        self.save()

    @property
    def is_cancelled(self):
        return self.status == self.CANCELLED_STATUS

    @classmethod
    def allowed_statuses(cls):
        return [value for value, _ in cls.STATUS_CHOICES]

    def apply_status(self, new_status, user=None):
        """Move to ``new_status``; any allowed value is accepted from any state"""
        self.status = new_status
        update_fields = ['status', 'updated_at']
        if new_status in self.APPROVAL_STATUSES:
            self.approved_by = user
            self.approved_at = timezone.now()
            update_fields += ['approved_by', 'approved_at']
        if new_status in self.PAID_STATUSES and hasattr(self, 'payment_date') and not self.payment_date:
            self.payment_date = timezone.localdate()
            update_fields.append('payment_date')
        self.save(update_fields=update_fields)
        return update_fields


class DocumentLine(models.Model):
    """A line item; ``amount`` is always derived from quantity and unit price"""
    product = models.ForeignKey(Product, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    description = models.CharField(max_length=500)
    quantity = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('1'), validators=[MinValueValidator(Decimal('1'))])
    unit_price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'), validators=[MinValueValidator(Decimal('0.00'))])
    amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    position = models.PositiveIntegerField(default=0)

    class Meta:
        abstract = True
        ordering = ['position', 'id']

    def __str__(self):
        return f"{self.description} x{self.quantity}"

    def save(self, *args, **kwargs):
        self.amount = compute_line_amount(self.quantity, self.unit_price)
        super().save(*args, **kwargs)


class SalesOrder(FinancialDocument):
    NUMBER_PREFIX = 'SO'
    ROLLUP_KIND = 'sales_order'
    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('confirmed', 'Confirmed'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]
    APPROVAL_STATUSES = ('confirmed',)
    COUNTERPARTY_FIELD = 'partner_name'

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    partner_name = models.CharField(max_length=255)
    partner_email = models.EmailField(blank=True)
    order_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)

    class Meta(FinancialDocument.Meta):
        db_table = 'sales_orders'
        indexes = [
            models.Index(fields=['project', 'status'], name='idx_so_project_status'),
        ]


class Invoice(FinancialDocument):
    NUMBER_PREFIX = 'INV'
    ROLLUP_KIND = 'invoice'
    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('sent', 'Sent'),
        ('paid', 'Paid'),
        ('overdue', 'Overdue'),
        ('cancelled', 'Cancelled'),
    ]
    APPROVAL_STATUSES = ('sent',)
    PAID_STATUSES = ('paid',)
    COUNTERPARTY_FIELD = 'client_name'

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    client_name = models.CharField(max_length=255)
    client_email = models.EmailField(blank=True)
    client_address = models.TextField(blank=True)
    sales_order = models.ForeignKey(SalesOrder, on_delete=models.SET_NULL, null=True, blank=True, related_name='invoices')
    invoice_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)
    payment_date = models.DateField(null=True, blank=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)

    class Meta(FinancialDocument.Meta):
        db_table = 'invoices'
        indexes = [
            models.Index(fields=['project', 'status'], name='idx_invoice_project_status'),
        ]

    @property
    def is_paid(self):
        return self.status == 'paid'


class PurchaseOrder(FinancialDocument):
    NUMBER_PREFIX = 'PO'
    ROLLUP_KIND = 'purchase_order'
    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('approved', 'Approved'),
        ('received', 'Received'),
        ('cancelled', 'Cancelled'),
    ]
    APPROVAL_STATUSES = ('approved',)
    COUNTERPARTY_FIELD = 'vendor_name'

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    vendor_name = models.CharField(max_length=255)
    vendor_email = models.EmailField(blank=True)
    vendor_phone = models.CharField(max_length=30, blank=True)
    order_date = models.DateField(default=timezone.localdate)
    delivery_date = models.DateField(null=True, blank=True)

    class Meta(FinancialDocument.Meta):
        db_table = 'purchase_orders'
        indexes = [
            models.Index(fields=['project', 'status'], name='idx_po_project_status'),
        ]


class VendorBill(FinancialDocument):
    NUMBER_PREFIX = 'VB'
    ROLLUP_KIND = 'vendor_bill'
    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('approved', 'Approved'),
        ('paid', 'Paid'),
        ('overdue', 'Overdue'),
        ('cancelled', 'Cancelled'),
    ]
    APPROVAL_STATUSES = ('approved',)
    PAID_STATUSES = ('paid',)
    COUNTERPARTY_FIELD = 'vendor_name'

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    vendor_name = models.CharField(max_length=255)
    vendor_email = models.EmailField(blank=True)
    vendor_address = models.TextField(blank=True)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.SET_NULL, null=True, blank=True, related_name='vendor_bills')
    bill_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)
    payment_date = models.DateField(null=True, blank=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)

    class Meta(FinancialDocument.Meta):
        db_table = 'vendor_bills'
        indexes = [
            models.Index(fields=['project', 'status'], name='idx_vb_project_status'),
        ]


class SalesOrderLine(DocumentLine):
    document = models.ForeignKey(SalesOrder, on_delete=models.CASCADE, related_name='lines')

    class Meta(DocumentLine.Meta):
        db_table = 'sales_order_lines'


class InvoiceLine(DocumentLine):
    document = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='lines')

    class Meta(DocumentLine.Meta):
        db_table = 'invoice_lines'


class PurchaseOrderLine(DocumentLine):
    document = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name='lines')

    class Meta(DocumentLine.Meta):
        db_table = 'purchase_order_lines'


class VendorBillLine(DocumentLine):
    document = models.ForeignKey(VendorBill, on_delete=models.CASCADE, related_name='lines')

    class Meta(DocumentLine.Meta):
        db_table = 'vendor_bill_lines'


class Expense(NumberedDocumentMixin, models.Model):
    """Out-of-pocket spend; only approved or paid expenses count toward project cost"""
    NUMBER_PREFIX = 'EXP'
    NUMBER_FIELD = 'reference'
    ROLLUP_KIND = 'expense'
    CATEGORY_CHOICES = [
        ('travel', 'Travel'),
        ('accommodation', 'Accommodation'),
        ('meals', 'Meals'),
        ('supplies', 'Supplies'),
        ('software', 'Software'),
        ('transportation', 'Transportation'),
        ('miscellaneous', 'Miscellaneous'),
    ]
    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('submitted', 'Submitted'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
        ('paid', 'Paid'),
    ]
    COUNTED_STATUSES = ('approved', 'paid')
    APPROVAL_STATUSES = ('approved', 'rejected')
    PAID_STATUSES = ('paid',)

    reference = models.CharField(max_length=50, unique=True, blank=True)
    title = models.CharField(max_length=255)
    project = models.ForeignKey(Project, on_delete=models.SET_NULL, null=True, blank=True, related_name='expenses')
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='expenses')
    category = models.CharField(max_length=30, choices=CATEGORY_CHOICES, default='miscellaneous')
    description = models.TextField(blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(Decimal('0.00'))])
    date = models.DateField(default=timezone.localdate)
    attachment = models.URLField(max_length=500, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    approved_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='approved_expenses')
    approved_at = models.DateTimeField(null=True, blank=True)
    payment_date = models.DateField(null=True, blank=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'expenses'
        ordering = ['-date', '-created_at']
        indexes = [
            models.Index(fields=['project', 'status'], name='idx_expense_project_status'),
            models.Index(fields=['user', 'status'], name='idx_expense_user_status'),
        ]

    def __str__(self):
        return f"{self.reference} - {self.title}" if self.reference else self.title

    def save(self, *args, **kwargs):
        self.save_with_number(*args, **kwargs)

    @property
    def counts_toward_cost(self):
        return self.status in self.COUNTED_STATUSES

    @classmethod
    def allowed_statuses(cls):
        return [value for value, _ in cls.STATUS_CHOICES]

    def apply_status(self, new_status, user=None):
        self.status = new_status
        update_fields = ['status', 'updated_at']
        if new_status in self.APPROVAL_STATUSES:
            self.approved_by = user
            self.approved_at = timezone.now()
            update_fields += ['approved_by', 'approved_at']
        if new_status in self.PAID_STATUSES and not self.payment_date:
            self.payment_date = timezone.localdate()
            update_fields.append('payment_date')
        self.save(update_fields=update_fields)
        return update_fields
