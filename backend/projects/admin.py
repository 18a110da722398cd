from django.contrib import admin
from .models import Project, Task, Timesheet


class TaskInline(admin.TabularInline):
    model = Task
    extra = 0
    fields = ['title', 'assigned_to', 'status', 'priority', 'due_date', 'time_logged']
    readonly_fields = ['time_logged']


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ['name', 'code', 'client', 'manager', 'status', 'revenue', 'cost', 'profit', 'archived']
    list_filter = ['status', 'archived', 'start_date']
    search_fields = ['name', 'code', 'client']
    ordering = ['-created_at']
    filter_horizontal = ['team_members']
    readonly_fields = ['revenue', 'cost', 'profit', 'financials_updated_at', 'created_at', 'updated_at']
    inlines = [TaskInline]


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ['title', 'project', 'assigned_to', 'status', 'priority', 'due_date', 'time_logged']
    list_filter = ['status', 'priority', 'archived']
    search_fields = ['title', 'project__name', 'assigned_to__username']
    ordering = ['due_date']
    readonly_fields = ['time_logged', 'created_at', 'updated_at']


@admin.register(Timesheet)
class TimesheetAdmin(admin.ModelAdmin):
    list_display = ['user', 'project', 'task', 'date', 'hours', 'cost', 'billable', 'approved']
    list_filter = ['approved', 'billable', 'date']
    search_fields = ['user__username', 'project__name', 'description']
    ordering = ['-date']
    readonly_fields = ['cost', 'approved_by', 'approved_at', 'created_at', 'updated_at']
