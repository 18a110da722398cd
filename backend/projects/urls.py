from django.urls import path
from .views import (
    project_list_create, project_detail, project_assign, project_status,
    project_financials, project_recompute,
    task_list_create, task_detail, task_status, task_assign,
    timesheet_list_create, timesheet_detail, timesheet_status,
)

urlpatterns = [
    # Project endpoints
    path('projects/', project_list_create, name='project-list-create'),
    path('projects/<int:pk>/', project_detail, name='project-detail'),
    path('projects/<int:pk>/assign/', project_assign, name='project-assign'),
    path('projects/<int:pk>/status/', project_status, name='project-status'),
    path('projects/<int:pk>/financials/', project_financials, name='project-financials'),
    path('projects/<int:pk>/recompute/', project_recompute, name='project-recompute'),

    # Task endpoints
    path('tasks/', task_list_create, name='task-list-create'),
    path('tasks/<int:pk>/', task_detail, name='task-detail'),
    path('tasks/<int:pk>/status/', task_status, name='task-status'),
    path('tasks/<int:pk>/assign/', task_assign, name='task-assign'),

    # Timesheet endpoints
    path('timesheets/', timesheet_list_create, name='timesheet-list-create'),
    path('timesheets/<int:pk>/', timesheet_detail, name='timesheet-detail'),
    path('timesheets/<int:pk>/status/', timesheet_status, name='timesheet-status'),
]
