from django.urls import path, re_path
from .views import (
    document_list_create, document_detail, document_status, document_link_project,
    expense_list_create, expense_detail, expense_approve, expense_status, expense_link_project,
    product_list_create, product_detail,
)

DOCUMENT_TYPE = r'(?P<doc_type>sales-orders|invoices|purchase-orders|vendor-bills)'

urlpatterns = [
    # Expenses
    path('billing/expenses/', expense_list_create, name='expense-list-create'),
    path('billing/expenses/<int:pk>/', expense_detail, name='expense-detail'),
    path('billing/expenses/<int:pk>/approve/', expense_approve, name='expense-approve'),
    path('billing/expenses/<int:pk>/status/', expense_status, name='expense-status'),
    path('billing/expenses/<int:pk>/link-project/', expense_link_project, name='expense-link-project'),

    # Products
    path('billing/products/', product_list_create, name='product-list-create'),
    path('billing/products/<int:pk>/', product_detail, name='product-detail'),

    # Sales orders, invoices, purchase orders and vendor bills
    re_path(rf'^billing/{DOCUMENT_TYPE}/$', document_list_create, name='document-list-create'),
    re_path(rf'^billing/{DOCUMENT_TYPE}/(?P<pk>[0-9]+)/$', document_detail, name='document-detail'),
    re_path(rf'^billing/{DOCUMENT_TYPE}/(?P<pk>[0-9]+)/status/$', document_status, name='document-status'),
    re_path(rf'^billing/{DOCUMENT_TYPE}/(?P<pk>[0-9]+)/link-project/$', document_link_project, name='document-link-project'),
]
