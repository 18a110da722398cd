import logging

from django.db import transaction
from django.db.models import Q
from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from backend.billing.rollup import recompute_project_financials, recompute_for_change, financials_payload
from backend.core.pagination import paginated_response
from backend.core.permissions import IsManagerOrAdmin, IsManagerOrAdminForWrites
from backend.core.utils import create_audit_log
from .models import Project, Task, Timesheet
from .serializers import (
    ProjectSerializer, ProjectAssignSerializer, TaskSerializer, TaskAssignSerializer,
    TimesheetSerializer, TimesheetApprovalSerializer,
)

logger = logging.getLogger(__name__)

TIMESHEET_KIND = 'timesheet'


def forbidden(message='Permission denied'):
    return Response({'error': message}, status=status.HTTP_403_FORBIDDEN)


# Projects
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsManagerOrAdminForWrites])
def project_list_create(request):
    """List visible projects or create a new project"""
    if request.method == 'GET':
        queryset = Project.visible_to(request.user).select_related('manager').prefetch_related('team_members')

        if request.query_params.get('archived') == 'true':
            queryset = queryset.filter(archived=True)
        elif request.query_params.get('archived') != 'all':
            queryset = queryset.filter(archived=False)

        status_filter = request.query_params.get('status', None)
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        manager = request.query_params.get('manager', None)
        if manager:
            queryset = queryset.filter(manager_id=manager)
        search = request.query_params.get('search', '').strip()
        if search:
            queryset = queryset.filter(
                Q(name__icontains=search) | Q(code__icontains=search) | Q(client__icontains=search)
            )
        return paginated_response(request, queryset, ProjectSerializer)

    serializer = ProjectSerializer(data=request.data)
    if serializer.is_valid():
        extra = {'created_by': request.user}
        if not serializer.validated_data.get('manager'):
            extra['manager'] = request.user
        project = serializer.save(**extra)
        logger.info(f"Project {project.pk} '{project.name}' created by {request.user.username}")
        create_audit_log(request=request, action='create', instance=project)
        return Response(ProjectSerializer(project).data, status=status.HTTP_201_CREATED)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsManagerOrAdminForWrites])
def project_detail(request, pk):
    """Retrieve, update or delete a project"""
    project = get_object_or_404(Project.visible_to(request.user), pk=pk)

    if request.method == 'GET':
        return Response(ProjectSerializer(project).data)
    elif request.method in ('PUT', 'PATCH'):
        serializer = ProjectSerializer(project, data=request.data, partial=request.method == 'PATCH')
        if serializer.is_valid():
            serializer.save()
            create_audit_log(request=request, action='update', model_name='Project',
                             object_id=project.id, object_reference=project.code or project.name,
                             changes={key: value for key, value in serializer.validated_data.items()
                                      if key != 'team_members' and key != 'manager'})
            return Response(serializer.data)
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    else:  # DELETE
        if not request.user.is_admin_role:
            return forbidden('Only admins can delete projects.')
        project_id = project.id
        reference = project.code or project.name
        project.delete()
        logger.info(f"Project {project_id} deleted by {request.user.username}")
        create_audit_log(request=request, action='delete', model_name='Project',
                         object_id=project_id, object_reference=reference)
        return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def project_assign(request, pk):
    """Set the project manager and add, remove or replace team members"""
    project = get_object_or_404(Project, pk=pk)
    serializer = ProjectAssignSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    with transaction.atomic():
        if 'manager' in data:
            project.manager = data['manager']
            project.save(update_fields=['manager', 'updated_at'])
        if 'team_members' in data:
            if data['mode'] == 'add':
                project.team_members.add(*data['team_members'])
            elif data['mode'] == 'remove':
                project.team_members.remove(*data['team_members'])
            else:
                project.team_members.set(data['team_members'])

    create_audit_log(request=request, action='assign', model_name='Project',
                     object_id=project.id, object_reference=project.code or project.name,
                     changes={'manager': project.manager_id,
                              'team_members': list(project.team_members.values_list('id', flat=True))})
    return Response(ProjectSerializer(project).data)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def project_status(request, pk):
    project = get_object_or_404(Project, pk=pk)
    new_status = request.data.get('status')
    allowed = [value for value, _ in Project.STATUS_CHOICES]
    if new_status not in allowed:
        return Response({'status': [f"Invalid status. Allowed: {', '.join(allowed)}."]}, status=status.HTTP_400_BAD_REQUEST)

    old_status = project.status
    project.status = new_status
    update_fields = ['status', 'updated_at']
    if new_status == 'completed':
        project.progress = 100
        update_fields.append('progress')
    project.save(update_fields=update_fields)
    create_audit_log(request=request, action='status_change', model_name='Project',
                     object_id=project.id, object_reference=project.code or project.name,
                     changes={'status': {'old': old_status, 'new': new_status}})
    return Response(ProjectSerializer(project).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def project_financials(request, pk):
    """Stored financial figures of a project"""
    project = get_object_or_404(Project.visible_to(request.user), pk=pk)
    return Response({
        'project_id': project.id,
        'revenue': project.revenue,
        'cost': project.cost,
        'profit': project.profit,
        'margin': project.margin,
        'budget': project.budget,
        'financials_updated_at': project.financials_updated_at,
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def project_recompute(request, pk):
    """Force a full recompute of a project's financial figures"""
    project = get_object_or_404(Project, pk=pk)
    with transaction.atomic():
        result = recompute_project_financials(project.pk, kind='manual', user=request.user)
    response_status = status.HTTP_200_OK if result.ok else status.HTTP_503_SERVICE_UNAVAILABLE
    response = Response(result.as_dict(), status=response_status)
    response['X-Financials-Status'] = result.status
    return response


# Tasks
def task_queryset(user):
    queryset = Task.objects.select_related('project', 'assigned_to')
    if not user.can_manage:
        queryset = queryset.filter(Q(project__in=Project.visible_to(user)) | Q(assigned_to=user)).distinct()
    return queryset


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsManagerOrAdminForWrites])
def task_list_create(request):
    """List visible tasks or create a new task"""
    if request.method == 'GET':
        queryset = task_queryset(request.user)
        project = request.query_params.get('project', None)
        if project:
            queryset = queryset.filter(project_id=project)
        status_filter = request.query_params.get('status', None)
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        assignee = request.query_params.get('assigned_to', None)
        if assignee == 'me':
            queryset = queryset.filter(assigned_to=request.user)
        elif assignee:
            queryset = queryset.filter(assigned_to_id=assignee)
        if request.query_params.get('archived') != 'true':
            queryset = queryset.filter(archived=False)
        if request.query_params.get('overdue') == 'true':
            queryset = queryset.filter(due_date__lt=timezone.localdate()).exclude(status='completed')
        return paginated_response(request, queryset, TaskSerializer)

    serializer = TaskSerializer(data=request.data)
    if serializer.is_valid():
        task = serializer.save(created_by=request.user)
        if task.assigned_to_id:
            task.project.team_members.add(task.assigned_to)
        create_audit_log(request=request, action='create', instance=task)
        return Response(TaskSerializer(task).data, status=status.HTTP_201_CREATED)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def task_detail(request, pk):
    """Retrieve, update or delete a task"""
    task = get_object_or_404(task_queryset(request.user), pk=pk)

    if request.method == 'GET':
        return Response(TaskSerializer(task).data)
    elif request.method in ('PUT', 'PATCH'):
        if not request.user.can_manage and task.assigned_to_id != request.user.id:
            return forbidden('Only the assignee or a manager can edit this task.')
        serializer = TaskSerializer(task, data=request.data, partial=request.method == 'PATCH')
        if serializer.is_valid():
            serializer.save()
            return Response(serializer.data)
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    else:  # DELETE
        if not request.user.can_manage:
            return forbidden('Admin or Manager role required.')
        task_id = task.id
        title = task.title
        task.delete()
        create_audit_log(request=request, action='delete', model_name='Task',
                         object_id=task_id, object_reference=title)
        return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated])
def task_status(request, pk):
    """Move a task between board columns; assignees may move their own tasks"""
    task = get_object_or_404(task_queryset(request.user), pk=pk)
    if not request.user.can_manage and task.assigned_to_id != request.user.id:
        return forbidden('Only the assignee or a manager can change this task.')

    new_status = request.data.get('status')
    allowed = [value for value, _ in Task.STATUS_CHOICES]
    if new_status not in allowed:
        return Response({'status': [f"Invalid status. Allowed: {', '.join(allowed)}."]}, status=status.HTTP_400_BAD_REQUEST)

    task.status = new_status
    task.save()
    return Response(TaskSerializer(task).data)


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def task_assign(request, pk):
    task = get_object_or_404(Task, pk=pk)
    serializer = TaskAssignSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    old_assignee = task.assigned_to_id
    task.assigned_to = serializer.validated_data['assigned_to']
    task.save(update_fields=['assigned_to', 'updated_at'])
    if task.assigned_to_id:
        task.project.team_members.add(task.assigned_to)
    create_audit_log(request=request, action='assign', model_name='Task',
                     object_id=task.id, object_reference=task.title,
                     changes={'assigned_to': {'old': old_assignee, 'new': task.assigned_to_id}})
    return Response(TaskSerializer(task).data)


# Timesheets
def timesheet_queryset(user):
    queryset = Timesheet.objects.select_related('project', 'task', 'user')
    if not user.can_manage:
        queryset = queryset.filter(user=user)
    return queryset


def timesheet_response(timesheet, results, status_code=status.HTTP_200_OK):
    data = dict(TimesheetSerializer(timesheet).data)
    data['financials'] = financials_payload(results)
    response = Response(data, status=status_code)
    response['X-Financials-Status'] = results[0].status
    return response


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def timesheet_list_create(request):
    """List timesheets (team members see their own) or log time"""
    if request.method == 'GET':
        queryset = timesheet_queryset(request.user)
        for param, lookup in (('project', 'project_id'), ('task', 'task_id'), ('user', 'user_id')):
            value = request.query_params.get(param)
            if value:
                queryset = queryset.filter(**{lookup: value})
        approved = request.query_params.get('approved')
        if approved in ('true', 'false'):
            queryset = queryset.filter(approved=approved == 'true')
        date_from = request.query_params.get('date_from', None)
        date_to = request.query_params.get('date_to', None)
        if date_from:
            queryset = queryset.filter(date__gte=date_from)
        if date_to:
            queryset = queryset.filter(date__lte=date_to)
        return paginated_response(request, queryset, TimesheetSerializer)

    serializer = TimesheetSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    if not serializer.validated_data['project'].is_visible_to(request.user):
        return forbidden('You are not a member of this project.')

    with transaction.atomic():
        timesheet = serializer.save(user=request.user)
        results = recompute_for_change(timesheet.project_id, kind=TIMESHEET_KIND, user=request.user)

    logger.info(f"Timesheet {timesheet.id} logged by {request.user.username}: {timesheet.hours}h on project {timesheet.project_id}")
    return timesheet_response(timesheet, results, status.HTTP_201_CREATED)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def timesheet_detail(request, pk):
    """Retrieve, update or delete a timesheet"""
    timesheet = get_object_or_404(timesheet_queryset(request.user), pk=pk)

    if request.method == 'GET':
        return Response(TimesheetSerializer(timesheet).data)

    if not request.user.can_manage and timesheet.approved:
        return forbidden('Approved timesheets can only be changed by a manager.')

    if request.method in ('PUT', 'PATCH'):
        previous_project_id = timesheet.project_id
        previous_task = timesheet.task
        serializer = TimesheetSerializer(timesheet, data=request.data, partial=request.method == 'PATCH')
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        with transaction.atomic():
            timesheet = serializer.save()
            if previous_task is not None and previous_task.pk != timesheet.task_id:
                previous_task.refresh_time_logged()
            results = recompute_for_change(
                timesheet.project_id, previous_project_id=previous_project_id,
                kind=TIMESHEET_KIND, user=request.user
            )
        return timesheet_response(timesheet, results)

    # DELETE
    project_id = timesheet.project_id
    with transaction.atomic():
        timesheet.delete()
        results = recompute_for_change(project_id, kind=TIMESHEET_KIND, user=request.user)
    return Response({'deleted': pk, 'financials': financials_payload(results)})


@api_view(['PUT', 'PATCH'])
@permission_classes([IsAuthenticated, IsManagerOrAdmin])
def timesheet_status(request, pk):
    """Approve or un-approve a timesheet; approved time counts toward project cost"""
    timesheet = get_object_or_404(Timesheet, pk=pk)
    serializer = TimesheetApprovalSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    approved = serializer.validated_data['approved']
    with transaction.atomic():
        timesheet.approved = approved
        timesheet.approved_by = request.user if approved else None
        timesheet.approved_at = timezone.now() if approved else None
        timesheet.save()
        results = recompute_for_change(timesheet.project_id, kind=TIMESHEET_KIND, user=request.user)

    create_audit_log(request=request, action='timesheet_approve', model_name='Timesheet',
                     object_id=timesheet.id, changes={'approved': approved, 'cost': timesheet.cost})
    return timesheet_response(timesheet, results)
