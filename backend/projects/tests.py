"""
Test suite for the projects module
Tests: Projects, Visibility, Assignment, Tasks, Timesheets and their cost
"""
from datetime import timedelta
from decimal import Decimal

from django.test import TestCase
from django.utils import timezone
from rest_framework import status

from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.projects.models import Project, Task, Timesheet


class ProjectTests(TestCase):
    """Test project CRUD and visibility"""

    def setUp(self):
        self.admin = TestDataFactory.create_admin()
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.manager)

    def test_create_project_defaults_manager(self):
        response = self.client.post('/api/v1/projects/', {'name': 'Website', 'budget': '5000.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        project = Project.objects.get(pk=response.data['id'])
        self.assertEqual(project.manager, self.manager)
        self.assertEqual(project.revenue, Decimal('0.00'))

    def test_financial_fields_are_read_only(self):
        response = self.client.post('/api/v1/projects/', {'name': 'Padded', 'revenue': '999.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Project.objects.get(pk=response.data['id']).revenue, Decimal('0.00'))

    def test_end_date_before_start_rejected(self):
        today = timezone.localdate()
        response = self.client.post('/api/v1/projects/', {
            'name': 'Backwards',
            'start_date': today.isoformat(),
            'end_date': (today - timedelta(days=1)).isoformat(),
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_team_member_cannot_create_project(self):
        self.client.authenticate_user(self.member)
        response = self.client.post('/api/v1/projects/', {'name': 'Nope'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_team_member_sees_only_own_projects(self):
        mine = TestDataFactory.create_project(team_members=[self.member])
        via_task = TestDataFactory.create_project()
        TestDataFactory.create_task(via_task, assigned_to=self.member)
        TestDataFactory.create_project()

        self.client.authenticate_user(self.member)
        response = self.client.get('/api/v1/projects/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        ids = {row['id'] for row in response.data['results']}
        self.assertEqual(ids, {mine.id, via_task.id})

    def test_hidden_project_returns_404_for_member(self):
        project = TestDataFactory.create_project()
        self.client.authenticate_user(self.member)
        response = self.client.get(f'/api/v1/projects/{project.id}/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_archived_projects_hidden_by_default(self):
        TestDataFactory.create_project(archived=True)
        active = TestDataFactory.create_project()
        response = self.client.get('/api/v1/projects/')
        self.assertEqual([row['id'] for row in response.data['results']], [active.id])
        response = self.client.get('/api/v1/projects/?archived=all')
        self.assertEqual(response.data['count'], 2)

    def test_only_admin_deletes_project(self):
        project = TestDataFactory.create_project()
        response = self.client.delete(f'/api/v1/projects/{project.id}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.authenticate_user(self.admin)
        response = self.client.delete(f'/api/v1/projects/{project.id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(Project.objects.filter(pk=project.id).exists())

    def test_completed_status_sets_progress(self):
        project = TestDataFactory.create_project()
        response = self.client.patch(f'/api/v1/projects/{project.id}/status/', {'status': 'completed'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        project.refresh_from_db()
        self.assertEqual(project.progress, 100)

    def test_invalid_status_rejected(self):
        project = TestDataFactory.create_project()
        response = self.client.patch(f'/api/v1/projects/{project.id}/status/', {'status': 'exploded'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_assign_team_modes(self):
        project = TestDataFactory.create_project(team_members=[self.member])
        other = TestDataFactory.create_user()

        response = self.client.patch(f'/api/v1/projects/{project.id}/assign/',
                                     {'team_members': [other.id], 'mode': 'add'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(set(project.team_members.values_list('id', flat=True)), {self.member.id, other.id})

        self.client.patch(f'/api/v1/projects/{project.id}/assign/',
                          {'team_members': [self.member.id], 'mode': 'remove'}, format='json')
        self.assertEqual(list(project.team_members.values_list('id', flat=True)), [other.id])

    def test_assign_requires_payload(self):
        project = TestDataFactory.create_project()
        response = self.client.patch(f'/api/v1/projects/{project.id}/assign/', {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_progress_is_clamped(self):
        project = TestDataFactory.create_project()
        project.progress = 250
        project.save()
        self.assertEqual(project.progress, 100)

    def test_margin(self):
        project = TestDataFactory.create_project()
        self.assertEqual(project.margin, Decimal('0.00'))
        project.revenue = Decimal('200.00')
        project.profit = Decimal('50.00')
        self.assertEqual(project.margin, Decimal('25.00'))


class TaskTests(TestCase):
    """Test task endpoints"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()
        self.project = TestDataFactory.create_project(manager=self.manager)
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.manager)

    def test_create_task_adds_assignee_to_team(self):
        response = self.client.post('/api/v1/tasks/', {
            'project': self.project.id,
            'title': 'Design mockups',
            'assigned_to': self.member.id,
            'estimated_hours': '8.00',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(self.project.team_members.filter(pk=self.member.pk).exists())

    def test_assignee_can_move_own_task(self):
        task = TestDataFactory.create_task(self.project, assigned_to=self.member)
        self.client.authenticate_user(self.member)
        response = self.client.patch(f'/api/v1/tasks/{task.id}/status/', {'status': 'completed'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        task.refresh_from_db()
        self.assertEqual(task.progress, 100)

    def test_other_member_cannot_move_task(self):
        other = TestDataFactory.create_user()
        self.project.team_members.add(other)
        task = TestDataFactory.create_task(self.project, assigned_to=self.member)
        self.client.authenticate_user(other)
        response = self.client.patch(f'/api/v1/tasks/{task.id}/status/', {'status': 'review'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_overdue_filter(self):
        yesterday = timezone.localdate() - timedelta(days=1)
        late = TestDataFactory.create_task(self.project, due_date=yesterday)
        TestDataFactory.create_task(self.project, due_date=yesterday, status='completed')
        TestDataFactory.create_task(self.project, due_date=timezone.localdate() + timedelta(days=3))
        response = self.client.get('/api/v1/tasks/?overdue=true')
        self.assertEqual([row['id'] for row in response.data['results']], [late.id])
        self.assertTrue(response.data['results'][0]['is_overdue'])

    def test_reassign_task(self):
        task = TestDataFactory.create_task(self.project)
        response = self.client.patch(f'/api/v1/tasks/{task.id}/assign/', {'assigned_to': self.member.id}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        task.refresh_from_db()
        self.assertEqual(task.assigned_to, self.member)


class TimesheetTests(TestCase):
    """Test timesheets, their cost snapshot and project cost roll-up"""

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user(hourly_rate=Decimal('50.00'))
        self.project = TestDataFactory.create_project(manager=self.manager, team_members=[self.member])
        self.task = TestDataFactory.create_task(self.project, assigned_to=self.member, estimated_hours=Decimal('10.00'))
        self.client = AuthenticatedAPIClient()

    def test_cost_uses_user_rate_snapshot(self):
        timesheet = TestDataFactory.create_timesheet(self.project, self.member, hours=Decimal('2.50'))
        self.assertEqual(timesheet.hourly_rate, Decimal('50.00'))
        self.assertEqual(timesheet.cost, Decimal('125.00'))

        self.member.hourly_rate = Decimal('80.00')
        self.member.save()
        timesheet.refresh_from_db()
        timesheet.save()
        self.assertEqual(timesheet.cost, Decimal('125.00'))

    def test_task_time_logged_follows_timesheets(self):
        first = TestDataFactory.create_timesheet(self.project, self.member, hours=Decimal('3.00'), task=self.task)
        TestDataFactory.create_timesheet(self.project, self.member, hours=Decimal('1.50'), task=self.task)
        self.task.refresh_from_db()
        self.assertEqual(self.task.time_logged, Decimal('4.50'))
        self.assertEqual(self.task.remaining_hours, Decimal('5.50'))

        first.delete()
        self.task.refresh_from_db()
        self.assertEqual(self.task.time_logged, Decimal('1.50'))

    def test_member_logs_time(self):
        self.client.authenticate_user(self.member)
        response = self.client.post('/api/v1/timesheets/', {
            'project': self.project.id,
            'task': self.task.id,
            'hours': '2.00',
            'description': 'Wireframes',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['cost'], Decimal('100.00'))
        self.assertEqual(response['X-Financials-Status'], 'updated')
        # Unapproved time does not count toward cost
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('0.00'))

    def test_member_cannot_log_on_foreign_project(self):
        other_project = TestDataFactory.create_project()
        self.client.authenticate_user(self.member)
        response = self.client.post('/api/v1/timesheets/', {'project': other_project.id, 'hours': '1.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_task_must_belong_to_project(self):
        other_project = TestDataFactory.create_project(team_members=[self.member])
        self.client.authenticate_user(self.member)
        response = self.client.post('/api/v1/timesheets/', {
            'project': other_project.id, 'task': self.task.id, 'hours': '1.00'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_approval_adds_cost_and_unapproval_removes_it(self):
        timesheet = TestDataFactory.create_timesheet(self.project, self.member, hours=Decimal('4.00'))
        self.client.authenticate_user(self.manager)

        response = self.client.patch(f'/api/v1/timesheets/{timesheet.id}/status/', {'approved': True}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['financials']['cost'], '200.00')
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('200.00'))
        self.assertEqual(self.project.profit, Decimal('-200.00'))

        self.client.patch(f'/api/v1/timesheets/{timesheet.id}/status/', {'approved': False}, format='json')
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('0.00'))

    def test_member_cannot_edit_approved_timesheet(self):
        timesheet = TestDataFactory.create_timesheet(self.project, self.member, approved=True)
        self.client.authenticate_user(self.member)
        response = self.client.patch(f'/api/v1/timesheets/{timesheet.id}/', {'hours': '9.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_delete_approved_timesheet_reduces_cost(self):
        timesheet = TestDataFactory.create_timesheet(self.project, self.member, hours=Decimal('2.00'), approved=True)
        self.client.authenticate_user(self.manager)
        self.client.post(f'/api/v1/projects/{self.project.id}/recompute/')
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('100.00'))

        response = self.client.delete(f'/api/v1/timesheets/{timesheet.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.project.refresh_from_db()
        self.assertEqual(self.project.cost, Decimal('0.00'))
        self.assertFalse(Timesheet.objects.filter(pk=timesheet.id).exists())

    def test_member_sees_only_own_timesheets(self):
        other = TestDataFactory.create_user()
        mine = TestDataFactory.create_timesheet(self.project, self.member)
        TestDataFactory.create_timesheet(self.project, other)
        self.client.authenticate_user(self.member)
        response = self.client.get('/api/v1/timesheets/')
        self.assertEqual([row['id'] for row in response.data['results']], [mine.id])

    def test_task_deleted_keeps_timesheet(self):
        timesheet = TestDataFactory.create_timesheet(self.project, self.member, task=self.task)
        Task.objects.filter(pk=self.task.pk).delete()
        timesheet.refresh_from_db()
        self.assertIsNone(timesheet.task_id)
