from rest_framework import serializers

from .models import (
    Product, SalesOrder, SalesOrderLine, Invoice, InvoiceLine,
    PurchaseOrder, PurchaseOrderLine, VendorBill, VendorBillLine, Expense,
)


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = [
            'id', 'name', 'can_be_sold', 'can_be_purchased', 'can_be_expensed',
            'sales_price', 'sales_tax_rate', 'cost', 'unit', 'description', 'active',
            'created_at', 'updated_at'
        ]
        read_only_fields = ['created_at', 'updated_at']

    def validate(self, attrs):
        can_be_sold = attrs.get('can_be_sold', getattr(self.instance, 'can_be_sold', True))
        can_be_purchased = attrs.get('can_be_purchased', getattr(self.instance, 'can_be_purchased', False))
        can_be_expensed = attrs.get('can_be_expensed', getattr(self.instance, 'can_be_expensed', False))
        if not (can_be_sold or can_be_purchased or can_be_expensed):
            raise serializers.ValidationError('A product must be sold, purchased or expensed.')
        return attrs


class DocumentLineSerializer(serializers.ModelSerializer):
    """Line item; ``amount`` is computed on save and never accepted from clients"""
    product_name = serializers.CharField(source='product.name', read_only=True, default=None)

    class Meta:
        fields = ['id', 'product', 'product_name', 'description', 'quantity', 'unit_price', 'amount', 'position']
        read_only_fields = ['id', 'amount']
        extra_kwargs = {'position': {'required': False}}


class SalesOrderLineSerializer(DocumentLineSerializer):
    class Meta(DocumentLineSerializer.Meta):
        model = SalesOrderLine


class InvoiceLineSerializer(DocumentLineSerializer):
    class Meta(DocumentLineSerializer.Meta):
        model = InvoiceLine


class PurchaseOrderLineSerializer(DocumentLineSerializer):
    class Meta(DocumentLineSerializer.Meta):
        model = PurchaseOrderLine


class VendorBillLineSerializer(DocumentLineSerializer):
    class Meta(DocumentLineSerializer.Meta):
        model = VendorBillLine


DOCUMENT_BASE_FIELDS = [
    'id', 'number', 'title', 'project', 'project_name', 'lines',
    'subtotal', 'tax_rate', 'tax_amount', 'total', 'status', 'notes',
    'created_by', 'created_by_name', 'approved_by', 'approved_at', 'created_at', 'updated_at',
]
DOCUMENT_READ_ONLY_FIELDS = [
    'subtotal', 'tax_amount', 'total', 'created_by', 'approved_by', 'approved_at',
    'created_at', 'updated_at',
]


class FinancialDocumentSerializer(serializers.ModelSerializer):
    """
    Base serializer for documents with line items.

    Lines are written as a nested list. On update, a ``lines`` key replaces
    every existing line; omitting it keeps the current lines. Totals are
    recomputed from the stored lines after each write.
    """
    # Declared explicitly so a taken number reaches the model as a retryable conflict
    number = serializers.CharField(required=False, allow_blank=True, max_length=50)
    project_name = serializers.CharField(source='project.name', read_only=True, default=None)
    created_by_name = serializers.CharField(source='created_by.username', read_only=True, default=None)

    def validate_project(self, value):
        if value is not None and value.archived:
            raise serializers.ValidationError('Cannot book documents against an archived project.')
        return value

    def create(self, validated_data):
        if not validated_data.get('number'):
            validated_data.pop('number', None)
        lines_data = validated_data.pop('lines', [])
        document = self.Meta.model(**validated_data)
        document.save()
        self._write_lines(document, lines_data)
        document.recalculate_totals()
        return document

    def update(self, instance, validated_data):
        if not validated_data.get('number'):
            validated_data.pop('number', None)
        lines_data = validated_data.pop('lines', None)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        if lines_data is not None:
            instance.lines.all().delete()
            self._write_lines(instance, lines_data)
            # Drop lines prefetched by the view so the response shows the new ones
            getattr(instance, '_prefetched_objects_cache', {}).pop('lines', None)
        instance.save()
        return instance

    def _write_lines(self, document, lines_data):
        line_model = document.lines.model
        for index, line_data in enumerate(lines_data):
            line_data = dict(line_data)
            line_data.setdefault('position', index)
            line = line_model(document=document, **line_data)
            line.save()


class SalesOrderSerializer(FinancialDocumentSerializer):
    lines = SalesOrderLineSerializer(many=True, required=False)

    class Meta:
        model = SalesOrder
        fields = DOCUMENT_BASE_FIELDS + ['partner_name', 'partner_email', 'order_date', 'due_date']
        read_only_fields = DOCUMENT_READ_ONLY_FIELDS


class InvoiceSerializer(FinancialDocumentSerializer):
    lines = InvoiceLineSerializer(many=True, required=False)
    is_paid = serializers.BooleanField(read_only=True)

    class Meta:
        model = Invoice
        fields = DOCUMENT_BASE_FIELDS + [
            'client_name', 'client_email', 'client_address', 'sales_order',
            'invoice_date', 'due_date', 'payment_date', 'payment_method', 'is_paid'
        ]
        read_only_fields = DOCUMENT_READ_ONLY_FIELDS


class PurchaseOrderSerializer(FinancialDocumentSerializer):
    lines = PurchaseOrderLineSerializer(many=True, required=False)

    class Meta:
        model = PurchaseOrder
        fields = DOCUMENT_BASE_FIELDS + ['vendor_name', 'vendor_email', 'vendor_phone', 'order_date', 'delivery_date']
        read_only_fields = DOCUMENT_READ_ONLY_FIELDS


class VendorBillSerializer(FinancialDocumentSerializer):
    lines = VendorBillLineSerializer(many=True, required=False)

    class Meta:
        model = VendorBill
        fields = DOCUMENT_BASE_FIELDS + [
            'vendor_name', 'vendor_email', 'vendor_address', 'purchase_order',
            'bill_date', 'due_date', 'payment_date', 'payment_method'
        ]
        read_only_fields = DOCUMENT_READ_ONLY_FIELDS


class ExpenseSerializer(serializers.ModelSerializer):
    reference = serializers.CharField(required=False, allow_blank=True, max_length=50)
    project_name = serializers.CharField(source='project.name', read_only=True, default=None)
    user_name = serializers.CharField(source='user.username', read_only=True, default=None)
    counts_toward_cost = serializers.BooleanField(read_only=True)

    class Meta:
        model = Expense
        fields = [
            'id', 'reference', 'title', 'project', 'project_name', 'user', 'user_name',
            'category', 'description', 'amount', 'date', 'attachment', 'status',
            'counts_toward_cost', 'approved_by', 'approved_at', 'payment_date', 'payment_method',
            'created_at', 'updated_at'
        ]
        read_only_fields = ['user', 'status', 'approved_by', 'approved_at', 'created_at', 'updated_at']

    def validate_project(self, value):
        if value is not None and value.archived:
            raise serializers.ValidationError('Cannot book expenses against an archived project.')
        return value

    def update(self, instance, validated_data):
        if not validated_data.get('reference'):
            validated_data.pop('reference', None)
        return super().update(instance, validated_data)


class StatusUpdateSerializer(serializers.Serializer):
    """Validates a status against the allow-list of the document type in context"""
    status = serializers.CharField()

    def validate_status(self, value):
        allowed = self.context['allowed_statuses']
        if value not in allowed:
            raise serializers.ValidationError(f"Invalid status '{value}'. Allowed: {', '.join(allowed)}.")
        return value


class ExpenseApprovalSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[('approved', 'Approved'), ('rejected', 'Rejected')])


class LinkProjectSerializer(serializers.Serializer):
    """``project`` may be null to unlink"""
    project = serializers.IntegerField(allow_null=True)
