from django.contrib import admin
from .models import (
    Product, DocumentSequence, SalesOrder, SalesOrderLine, Invoice, InvoiceLine,
    PurchaseOrder, PurchaseOrderLine, VendorBill, VendorBillLine, Expense,
)
from .rollup import recompute_project_financials


class LineInline(admin.TabularInline):
    extra = 0
    fields = ['position', 'product', 'description', 'quantity', 'unit_price', 'amount']
    readonly_fields = ['amount']


class SalesOrderLineInline(LineInline):
    model = SalesOrderLine


class InvoiceLineInline(LineInline):
    model = InvoiceLine


class PurchaseOrderLineInline(LineInline):
    model = PurchaseOrderLine


class VendorBillLineInline(LineInline):
    model = VendorBillLine


class FinancialDocumentAdmin(admin.ModelAdmin):
    list_filter = ['status', 'created_at']
    list_select_related = ['project']
    ordering = ['-created_at']
    readonly_fields = ['subtotal', 'tax_amount', 'total', 'approved_by', 'approved_at', 'created_at', 'updated_at']

    def save_related(self, request, form, formsets, change):
        # Totals and project figures depend on the inline lines saved here
        super().save_related(request, form, formsets, change)
        document = form.instance
        previous_project_id = form.initial.get('project')
        document.recalculate_totals()
        recompute_project_financials(document.project_id, kind=document.ROLLUP_KIND, user=request.user)
        if previous_project_id and previous_project_id != document.project_id:
            recompute_project_financials(previous_project_id, kind=document.ROLLUP_KIND, user=request.user)

    def delete_model(self, request, obj):
        project_id = obj.project_id
        super().delete_model(request, obj)
        recompute_project_financials(project_id, kind=obj.ROLLUP_KIND, user=request.user)


@admin.register(SalesOrder)
class SalesOrderAdmin(FinancialDocumentAdmin):
    list_display = ['number', 'partner_name', 'project', 'status', 'total', 'order_date']
    search_fields = ['number', 'title', 'partner_name']
    inlines = [SalesOrderLineInline]


@admin.register(Invoice)
class InvoiceAdmin(FinancialDocumentAdmin):
    list_display = ['number', 'client_name', 'project', 'status', 'total', 'invoice_date', 'due_date']
    search_fields = ['number', 'title', 'client_name', 'client_email']
    inlines = [InvoiceLineInline]


@admin.register(PurchaseOrder)
class PurchaseOrderAdmin(FinancialDocumentAdmin):
    list_display = ['number', 'vendor_name', 'project', 'status', 'total', 'order_date']
    search_fields = ['number', 'title', 'vendor_name']
    inlines = [PurchaseOrderLineInline]


@admin.register(VendorBill)
class VendorBillAdmin(FinancialDocumentAdmin):
    list_display = ['number', 'vendor_name', 'project', 'status', 'total', 'bill_date', 'due_date']
    search_fields = ['number', 'title', 'vendor_name']
    inlines = [VendorBillLineInline]


@admin.register(Expense)
class ExpenseAdmin(admin.ModelAdmin):
    list_display = ['reference', 'title', 'user', 'project', 'category', 'amount', 'status', 'date']
    list_filter = ['status', 'category', 'date']
    search_fields = ['reference', 'title', 'user__username']
    ordering = ['-date']
    readonly_fields = ['approved_by', 'approved_at', 'created_at', 'updated_at']

    def save_model(self, request, obj, form, change):
        previous_project_id = form.initial.get('project')
        super().save_model(request, obj, form, change)
        recompute_project_financials(obj.project_id, kind=obj.ROLLUP_KIND, user=request.user)
        if previous_project_id and previous_project_id != obj.project_id:
            recompute_project_financials(previous_project_id, kind=obj.ROLLUP_KIND, user=request.user)

    def delete_model(self, request, obj):
        project_id = obj.project_id
        super().delete_model(request, obj)
        recompute_project_financials(project_id, kind=obj.ROLLUP_KIND, user=request.user)


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['name', 'can_be_sold', 'can_be_purchased', 'can_be_expensed', 'sales_price', 'cost', 'active']
    list_filter = ['active', 'can_be_sold', 'can_be_purchased', 'can_be_expensed']
    search_fields = ['name', 'description']
    ordering = ['name']


@admin.register(DocumentSequence)
class DocumentSequenceAdmin(admin.ModelAdmin):
    list_display = ['prefix', 'year', 'last_value']
    list_filter = ['prefix', 'year']
    ordering = ['prefix', '-year']
