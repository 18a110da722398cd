from django.urls import path
from . import views

urlpatterns = [
    path('reports/financial-summary/', views.financial_summary, name='financial-summary'),
    path('reports/project-performance/', views.project_performance, name='project-performance'),
    path('reports/expense-breakdown/', views.expense_breakdown, name='expense-breakdown'),
    path('reports/time-utilization/', views.time_utilization, name='time-utilization'),
    path('reports/projects/<int:pk>/stats/', views.project_stats, name='project-stats'),
]
