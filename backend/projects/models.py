from decimal import Decimal

from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.db.models import Sum
from django.utils import timezone

from backend.core.models import User
from backend.core.money import quantize_money, to_decimal


class Project(models.Model):
    """A client engagement that documents, tasks and timesheets are booked against"""
    STATUS_CHOICES = [
        ('planned', 'Planned'),
        ('in_progress', 'In Progress'),
        ('on_hold', 'On Hold'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    name = models.CharField(max_length=255)
    code = models.CharField(max_length=50, blank=True, null=True, unique=True)
    description = models.TextField(blank=True)
    client = models.CharField(max_length=255, blank=True)
    manager = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='managed_projects')
    team_members = models.ManyToManyField(User, blank=True, related_name='projects')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='planned')
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    budget = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'), validators=[MinValueValidator(Decimal('0.00'))])
    progress = models.PositiveSmallIntegerField(default=0, validators=[MaxValueValidator(100)])
    tags = models.JSONField(default=list, blank=True)
    archived = models.BooleanField(default=False)
    # Derived figures, written only by the financial roll-up
    revenue = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    cost = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    profit = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    financials_updated_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='created_projects')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'projects'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='idx_project_status'),
            models.Index(fields=['archived', 'status'], name='idx_project_archived_status'),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}" if self.code else self.name

    def save(self, *args, **kwargs):
        self.progress = min(max(int(self.progress or 0), 0), 100)
        super().save(*args, **kwargs)

    @property
    def duration_days(self):
        if self.start_date and self.end_date:
            return (self.end_date - self.start_date).days
        return None

    @property
    def margin(self):
        """Profit as a percentage of revenue"""
        if not self.revenue:
            return Decimal('0.00')
        return quantize_money(self.profit * 100 / self.revenue)

    def is_visible_to(self, user):
        if user.can_manage:
            return True
        if self.team_members.filter(pk=user.pk).exists():
            return True
        return self.tasks.filter(assigned_to=user).exists()

    @classmethod
    def visible_to(cls, user):
        """Projects a user may see, team members only see projects they work on"""
        queryset = cls.objects.all()
        if user.can_manage:
            return queryset
        return queryset.filter(
            models.Q(team_members=user) | models.Q(tasks__assigned_to=user)
        ).distinct()


class Task(models.Model):
    STATUS_CHOICES = [
        ('todo', 'To Do'),
        ('in_progress', 'In Progress'),
        ('review', 'Review'),
        ('completed', 'Completed'),
        ('blocked', 'Blocked'),
    ]
    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
    ]

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='tasks')
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    assigned_to = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='assigned_tasks')
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='created_tasks')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='todo')
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='medium')
    start_date = models.DateField(null=True, blank=True)
    due_date = models.DateField(null=True, blank=True)
    estimated_hours = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal('0.00'), validators=[MinValueValidator(Decimal('0.00'))])
    time_logged = models.DecimalField(max_digits=8, decimal_places=2, default=Decimal('0.00'))
    progress = models.PositiveSmallIntegerField(default=0, validators=[MaxValueValidator(100)])
    tags = models.JSONField(default=list, blank=True)
    archived = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'tasks'
        ordering = ['due_date', '-created_at']
        indexes = [
            models.Index(fields=['project', 'status'], name='idx_task_project_status'),
            models.Index(fields=['assigned_to', 'status'], name='idx_task_assignee_status'),
        ]

    def __str__(self):
        return self.title

    def save(self, *args, **kwargs):
        self.progress = min(max(int(self.progress or 0), 0), 100)
        if self.status == 'completed':
            self.progress = 100
        super().save(*args, **kwargs)

    @property
    def is_overdue(self):
        if not self.due_date or self.status == 'completed':
            return False
        return self.due_date < timezone.localdate()

    @property
    def remaining_hours(self):
        return max(self.estimated_hours - self.time_logged, Decimal('0.00'))

    def refresh_time_logged(self):
        """Recalculate logged hours from the task's timesheets"""
        total = self.timesheets.aggregate(total=Sum('hours'))['total'] or Decimal('0.00')
        Task.objects.filter(pk=self.pk).update(time_logged=total)
        self.time_logged = total
        return total


class Timesheet(models.Model):
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='timesheets')
    task = models.ForeignKey(Task, on_delete=models.SET_NULL, null=True, blank=True, related_name='timesheets')
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='timesheets')
    date = models.DateField(default=timezone.localdate)
    hours = models.DecimalField(max_digits=6, decimal_places=2, validators=[MinValueValidator(Decimal('0.01'))])
    description = models.TextField(blank=True)
    billable = models.BooleanField(default=True)
    hourly_rate = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True, validators=[MinValueValidator(Decimal('0.00'))])
    cost = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    approved = models.BooleanField(default=False)
    approved_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='approved_timesheets')
    approved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'timesheets'
        ordering = ['-date', '-created_at']
        indexes = [
            models.Index(fields=['project', 'approved'], name='idx_timesheet_project_appr'),
            models.Index(fields=['user', 'date'], name='idx_timesheet_user_date'),
        ]

    def __str__(self):
        return f"{self.user} {self.date} {self.hours}h"

    def save(self, *args, **kwargs):
        # Snapshot the user's rate so later rate changes keep historical cost
        if self.hourly_rate is None:
            self.hourly_rate = self.user.hourly_rate if self.user_id else Decimal('0.00')
        self.cost = quantize_money(to_decimal(self.hours) * to_decimal(self.hourly_rate))
        super().save(*args, **kwargs)
        if self.task_id:
            self.task.refresh_time_logged()

    def delete(self, *args, **kwargs):
        task = self.task if self.task_id else None
        result = super().delete(*args, **kwargs)
        if task is not None:
            task.refresh_time_logged()
        return result
