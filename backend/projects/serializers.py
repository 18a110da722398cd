from rest_framework import serializers

from backend.core.models import User
from backend.core.serializers import UserSummarySerializer
from .models import Project, Task, Timesheet

FINANCIAL_FIELDS = ['revenue', 'cost', 'profit', 'financials_updated_at']


class ProjectSerializer(serializers.ModelSerializer):
    manager_detail = UserSummarySerializer(source='manager', read_only=True)
    team_members = serializers.PrimaryKeyRelatedField(queryset=User.objects.all(), many=True, required=False)
    progress = serializers.IntegerField(required=False)
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False)
    margin = serializers.DecimalField(max_digits=14, decimal_places=2, read_only=True)
    duration_days = serializers.IntegerField(read_only=True)

    class Meta:
        model = Project
        fields = [
            'id', 'name', 'code', 'description', 'client', 'manager', 'manager_detail', 'team_members',
            'status', 'start_date', 'end_date', 'budget', 'progress', 'tags', 'archived',
            'revenue', 'cost', 'profit', 'margin', 'financials_updated_at', 'duration_days',
            'created_by', 'created_at', 'updated_at'
        ]
        # Financial figures are owned by the roll-up
        read_only_fields = FINANCIAL_FIELDS + ['created_by', 'created_at', 'updated_at']

    def validate_code(self, value):
        return value or None

    def validate(self, attrs):
        start_date = attrs.get('start_date', getattr(self.instance, 'start_date', None))
        end_date = attrs.get('end_date', getattr(self.instance, 'end_date', None))
        if start_date and end_date and end_date < start_date:
            raise serializers.ValidationError({'end_date': 'End date cannot be before start date.'})
        return attrs


class ProjectAssignSerializer(serializers.Serializer):
    """Change a project's manager and team; ``mode`` controls how team ids apply"""
    MODE_CHOICES = [('set', 'Set'), ('add', 'Add'), ('remove', 'Remove')]

    manager = serializers.PrimaryKeyRelatedField(queryset=User.objects.all(), required=False, allow_null=True)
    team_members = serializers.PrimaryKeyRelatedField(queryset=User.objects.all(), many=True, required=False)
    mode = serializers.ChoiceField(choices=MODE_CHOICES, default='set')

    def validate(self, attrs):
        if 'manager' not in attrs and 'team_members' not in attrs:
            raise serializers.ValidationError('Provide a manager or team members.')
        return attrs


class TaskSerializer(serializers.ModelSerializer):
    project_name = serializers.CharField(source='project.name', read_only=True)
    assigned_to_detail = UserSummarySerializer(source='assigned_to', read_only=True)
    progress = serializers.IntegerField(required=False)
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False)
    is_overdue = serializers.BooleanField(read_only=True)
    remaining_hours = serializers.DecimalField(max_digits=8, decimal_places=2, read_only=True)

    class Meta:
        model = Task
        fields = [
            'id', 'project', 'project_name', 'title', 'description', 'assigned_to', 'assigned_to_detail',
            'status', 'priority', 'start_date', 'due_date', 'estimated_hours', 'time_logged',
            'remaining_hours', 'is_overdue', 'progress', 'tags', 'archived',
            'created_by', 'created_at', 'updated_at'
        ]
        read_only_fields = ['time_logged', 'created_by', 'created_at', 'updated_at']

    def validate(self, attrs):
        start_date = attrs.get('start_date', getattr(self.instance, 'start_date', None))
        due_date = attrs.get('due_date', getattr(self.instance, 'due_date', None))
        if start_date and due_date and due_date < start_date:
            raise serializers.ValidationError({'due_date': 'Due date cannot be before start date.'})
        return attrs


class TaskAssignSerializer(serializers.Serializer):
    assigned_to = serializers.PrimaryKeyRelatedField(queryset=User.objects.all(), allow_null=True)


class TimesheetSerializer(serializers.ModelSerializer):
    project_name = serializers.CharField(source='project.name', read_only=True)
    task_title = serializers.CharField(source='task.title', read_only=True, default=None)
    user_name = serializers.CharField(source='user.username', read_only=True)

    class Meta:
        model = Timesheet
        fields = [
            'id', 'project', 'project_name', 'task', 'task_title', 'user', 'user_name',
            'date', 'hours', 'description', 'billable', 'hourly_rate', 'cost',
            'approved', 'approved_by', 'approved_at', 'created_at', 'updated_at'
        ]
        read_only_fields = ['user', 'cost', 'approved', 'approved_by', 'approved_at', 'created_at', 'updated_at']

    def validate(self, attrs):
        project = attrs.get('project', getattr(self.instance, 'project', None))
        task = attrs.get('task', getattr(self.instance, 'task', None))
        if task is not None and project is not None and task.project_id != project.pk:
            raise serializers.ValidationError({'task': 'Task does not belong to the selected project.'})
        return attrs


class TimesheetApprovalSerializer(serializers.Serializer):
    approved = serializers.BooleanField()
