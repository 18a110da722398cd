import logging
from collections import namedtuple

from django.db import transaction
from django.http import Http404
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from backend.core.pagination import paginated_response
from backend.core.permissions import IsAdminRole, IsManagerOrAdmin, IsManagerOrAdminForWrites
from backend.core.utils import create_audit_log
from backend.projects.models import Project
from .filters import DocumentFilter, ExpenseFilter
from .models import Product, SalesOrder, Invoice, PurchaseOrder, VendorBill, Expense
from .rollup import recompute_for_change, financials_payload
from .serializers import (
    ProductSerializer, SalesOrderSerializer, InvoiceSerializer, PurchaseOrderSerializer,
    VendorBillSerializer, ExpenseSerializer, StatusUpdateSerializer,
    ExpenseApprovalSerializer, LinkProjectSerializer,
)

logger = logging.getLogger(__name__)

DocumentType = namedtuple('DocumentType', ['model', 'serializer_class'])

DOCUMENT_TYPES = {
    'sales-orders': DocumentType(SalesOrder, SalesOrderSerializer),
    'invoices': DocumentType(Invoice, InvoiceSerializer),
    'purchase-orders': DocumentType(PurchaseOrder, PurchaseOrderSerializer),
    'vendor-bills': DocumentType(VendorBill, VendorBillSerializer),
}


def get_document_type(doc_type):
    try:
        return DOCUMENT_TYPES[doc_type]
    except KeyError:
        raise Http404(f"Unknown document type '{doc_type}'")


def forbidden(message='Permission denied'):
    return Response({'error': message}, status=status.HTTP_403_FORBIDDEN)


def with_financials(data, results, status_code=status.HTTP_200_OK):
    """Attach roll-up results to a response body and header"""
    data = dict(data)
    data['financials'] = financials_payload(results)
    response = Response(data, status=status_code)
    response['X-Financials-Status'] = results[0].status
    return response


def document_queryset(model, user):
    queryset = model.objects.select_related('project', 'created_by', 'approved_by').prefetch_related('lines', 'lines__product')
    if not user.can_manage:
        # Team members only see documents of projects they work on
        queryset = queryset.filter(project__in=Project.visible_to(user))
    return queryset


def load_project(project_id):
    if project_id is None:
        return None
    return get_object_or_404(Project, pk=project_id)


# Line-item documents (sales orders, invoices, purchase orders, vendor bills)
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsManagerOrAdminForWrites])
def document_list_create(request, doc_type):
    """List documents of one type or create a new one"""
    document_type = get_document_type(doc_type)
    model = document_type.model

    if request.method == 'GET':
        queryset = document_queryset(model, request.user)
        filterset = DocumentFilter(request.query_params, queryset=queryset)
        if not filterset.is_valid():
            return Response(filterset.errors, status=status.HTTP_400_BAD_REQUEST)
        return paginated_response(request, filterset.qs, document_type.serializer_class)

    serializer = document_type.serializer_class(data=request.data, context={'request': request})
    if not serializer.is_valid():
        logger.warning(f"Rejected {model.__name__} create by {request.user.username}: {serializer.errors}")
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    with transaction.atomic():
        document = serializer.save(created_by=request.user)
        results = recompute_for_change(document.project_id, kind=model.ROLLUP_KIND, user=request.user)

    logger.info(f"{model.__name__} {document.number} created by {request.user.username} (total={document.total})")
    create_audit_log(
        request=request, action='create', model_name=model.__name__,
        object_id=document.id, object_reference=document.number,
        changes={'project': document.project_id, 'total': document.total, 'status': document.status}
    )
    return with_financials(serializer.data, results, status.HTTP_201_CREATED)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsManagerOrAdminForWrites])
def document_detail(request, doc_type, pk):
    """Retrieve, update or delete a document"""
    document_type = get_document_type(doc_type)
    model = document_type.model
    document = get_object_or_404(document_queryset(model, request.user), pk=pk)

    if request.method == 'GET':
        serializer = document_type.serializer_class(document, context={'request': request})
        return Response(serializer.data)

    if request.method in ('PUT', 'PATCH'):
        previous_project_id = document.project_id
        old_total = document.total
        serializer = document_type.serializer_class(
            document, data=request.data, partial=request.method == 'PATCH', context={'request': request}
        )
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        with transaction.atomic():
            document = serializer.save()
            results = recompute_for_change(
                document.project_id, previous_project_id=previous_project_id,
                kind=model.ROLLUP_KIND, user=request.user
            )

        create_audit_log(
            request=request, action='update', model_name=model.__name__,
            object_id=document.id, object_reference=document.number,
            changes={'total': {'old': old_total, 'new': document.total},
                     'project': {'old': previous_project_id, 'new': document.project_id}}
        )
        return with_financials(serializer.data, results)

    # DELETE
    if not request.user.is_admin_role:
        return forbidden('Only admins can delete documents.')

    number = document.number
    document_id = document.id
    project_id = document.project_id
    with transaction.atomic():
        document.delete()
        results = recompute_for_change(project_id, kind=model.ROLLUP_KIND, user=request.user)

    logger.info(f"{model.__name__} {number} deleted by {request.user.username}")
    create_audit_log(
        request=request, action='delete', model_name=model.__name__,
        object_id=document_id, object_reference=number, changes={'project': project_id}
    )
    return with_financials({'deleted': number}, results)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def document_status(request, doc_type, pk):
    """Set a document's status; any allowed status is accepted from any state"""
    document_type = get_document_type(doc_type)
    model = document_type.model
    document = get_object_or_404(model, pk=pk)

    serializer = StatusUpdateSerializer(data=request.data, context={'allowed_statuses': model.allowed_statuses()})
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    old_status = document.status
    new_status = serializer.validated_data['status']
    with transaction.atomic():
        document.apply_status(new_status, user=request.user)
        results = recompute_for_change(document.project_id, kind=model.ROLLUP_KIND, user=request.user)

    logger.info(f"{model.__name__} {document.number} status {old_status} -> {new_status} by {request.user.username}")
    create_audit_log(
        request=request, action='status_change', model_name=model.__name__,
        object_id=document.id, object_reference=document.number,
        changes={'status': {'old': old_status, 'new': new_status}}
    )
    data = document_type.serializer_class(document, context={'request': request}).data
    return with_financials(data, results)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsAdminRole])
def document_link_project(request, doc_type, pk):
    """Attach a document to a project (or detach it with ``project: null``)"""
    document_type = get_document_type(doc_type)
    model = document_type.model
    document = get_object_or_404(model, pk=pk)
    return _link_project(request, document, document_type.serializer_class)


def _link_project(request, document, serializer_class):
    serializer = LinkProjectSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    project = load_project(serializer.validated_data['project'])
    previous_project_id = document.project_id
    model = type(document)

    with transaction.atomic():
        document.project = project
        document.save(update_fields=['project', 'updated_at'])
        results = recompute_for_change(
            document.project_id, previous_project_id=previous_project_id,
            kind=model.ROLLUP_KIND, user=request.user
        )

    reference = getattr(document, document.NUMBER_FIELD)
    logger.info(f"{model.__name__} {reference} linked to project {document.project_id} (was {previous_project_id})")
    create_audit_log(
        request=request, action='link_project', model_name=model.__name__,
        object_id=document.id, object_reference=reference,
        changes={'project': {'old': previous_project_id, 'new': document.project_id}}
    )
    data = serializer_class(document, context={'request': request}).data
    return with_financials(data, results)


# Expenses
def expense_queryset(user):
    queryset = Expense.objects.select_related('project', 'user', 'approved_by')
    if not user.can_manage:
        queryset = queryset.filter(user=user)
    return queryset


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def expense_list_create(request):
    """List expenses (team members see their own) or submit a new expense"""
    if request.method == 'GET':
        filterset = ExpenseFilter(request.query_params, queryset=expense_queryset(request.user))
        if not filterset.is_valid():
            return Response(filterset.errors, status=status.HTTP_400_BAD_REQUEST)
        return paginated_response(request, filterset.qs, ExpenseSerializer)

    serializer = ExpenseSerializer(data=request.data, context={'request': request})
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    project = serializer.validated_data.get('project')
    if project is not None and not project.is_visible_to(request.user):
        return forbidden('You are not a member of this project.')

    with transaction.atomic():
        expense = serializer.save(user=request.user, status='submitted')
        results = recompute_for_change(expense.project_id, kind=Expense.ROLLUP_KIND, user=request.user)

    logger.info(f"Expense {expense.reference} submitted by {request.user.username} (amount={expense.amount})")
    create_audit_log(
        request=request, action='create', model_name='Expense',
        object_id=expense.id, object_reference=expense.reference,
        changes={'project': expense.project_id, 'amount': expense.amount}
    )
    return with_financials(serializer.data, results, status.HTTP_201_CREATED)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def expense_detail(request, pk):
    """Retrieve, update or delete an expense"""
    expense = get_object_or_404(expense_queryset(request.user), pk=pk)

    if request.method == 'GET':
        return Response(ExpenseSerializer(expense, context={'request': request}).data)

    if not request.user.can_manage and expense.counts_toward_cost:
        return forbidden('Approved expenses can only be changed by a manager.')

    if request.method in ('PUT', 'PATCH'):
        previous_project_id = expense.project_id
        old_amount = expense.amount
        serializer = ExpenseSerializer(
            expense, data=request.data, partial=request.method == 'PATCH', context={'request': request}
        )
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        project = serializer.validated_data.get('project')
        if project is not None and project.id != previous_project_id and not project.is_visible_to(request.user):
            return forbidden('You are not a member of this project.')

        with transaction.atomic():
            expense = serializer.save()
            results = recompute_for_change(
                expense.project_id, previous_project_id=previous_project_id,
                kind=Expense.ROLLUP_KIND, user=request.user
            )

        create_audit_log(
            request=request, action='update', model_name='Expense',
            object_id=expense.id, object_reference=expense.reference,
            changes={'amount': {'old': old_amount, 'new': expense.amount}}
        )
        return with_financials(serializer.data, results)

    # DELETE
    reference = expense.reference
    expense_id = expense.id
    project_id = expense.project_id
    with transaction.atomic():
        expense.delete()
        results = recompute_for_change(project_id, kind=Expense.ROLLUP_KIND, user=request.user)

    create_audit_log(
        request=request, action='delete', model_name='Expense',
        object_id=expense_id, object_reference=reference, changes={'project': project_id}
    )
    return with_financials({'deleted': reference}, results)


def _change_expense_status(request, expense, new_status, action):
    old_status = expense.status
    with transaction.atomic():
        expense.apply_status(new_status, user=request.user)
        results = recompute_for_change(expense.project_id, kind=Expense.ROLLUP_KIND, user=request.user)

    logger.info(f"Expense {expense.reference} status {old_status} -> {new_status} by {request.user.username}")
    create_audit_log(
        request=request, action=action, model_name='Expense',
        object_id=expense.id, object_reference=expense.reference,
        changes={'status': {'old': old_status, 'new': new_status}, 'amount': expense.amount}
    )
    return with_financials(ExpenseSerializer(expense, context={'request': request}).data, results)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def expense_approve(request, pk):
    """Approve or reject a submitted expense"""
    expense = get_object_or_404(Expense, pk=pk)
    serializer = ExpenseApprovalSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    new_status = serializer.validated_data['status']
    action = 'expense_approve' if new_status == 'approved' else 'expense_reject'
    return _change_expense_status(request, expense, new_status, action)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def expense_status(request, pk):
    """Set any allowed expense status, e.g. mark an approved expense as paid"""
    expense = get_object_or_404(Expense, pk=pk)
    serializer = StatusUpdateSerializer(data=request.data, context={'allowed_statuses': Expense.allowed_statuses()})
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return _change_expense_status(request, expense, serializer.validated_data['status'], 'status_change')


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsAdminRole])
def expense_link_project(request, pk):
    expense = get_object_or_404(Expense, pk=pk)
    return _link_project(request, expense, ExpenseSerializer)


# Products
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsManagerOrAdminForWrites])
def product_list_create(request):
    """List products or create a new product"""
    if request.method == 'GET':
        queryset = Product.objects.all()
        if request.query_params.get('include_inactive') != 'true':
            queryset = queryset.filter(active=True)
        usage = request.query_params.get('type')
        if usage == 'sales':
            queryset = queryset.filter(can_be_sold=True)
        elif usage == 'purchase':
            queryset = queryset.filter(can_be_purchased=True)
        elif usage == 'expenses':
            queryset = queryset.filter(can_be_expensed=True)
        search = request.query_params.get('search', '').strip()
        if search:
            queryset = queryset.filter(name__icontains=search)
        return Response(ProductSerializer(queryset, many=True).data)

    serializer = ProductSerializer(data=request.data)
    if serializer.is_valid():
        product = serializer.save()
        create_audit_log(request=request, action='create', instance=product)
        return Response(serializer.data, status=status.HTTP_201_CREATED)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsManagerOrAdminForWrites])
def product_detail(request, pk):
    """Retrieve, update or deactivate a product"""
    product = get_object_or_404(Product, pk=pk)

    if request.method == 'GET':
        return Response(ProductSerializer(product).data)
    elif request.method in ('PUT', 'PATCH'):
        serializer = ProductSerializer(product, data=request.data, partial=request.method == 'PATCH')
        if serializer.is_valid():
            serializer.save()
            return Response(serializer.data)
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    else:  # DELETE, lines keep pointing at the product so it is only deactivated
        product.active = False
        product.save(update_fields=['active', 'updated_at'])
        create_audit_log(request=request, action='delete', instance=product)
        return Response(status=status.HTTP_204_NO_CONTENT)
