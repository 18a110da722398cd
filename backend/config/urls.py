"""
URL configuration for the project billing backend.

Every app mounts its routes under the versioned ``api/v1/`` prefix.
"""
from django.contrib import admin
from django.urls import path, include

admin.site.site_header = "Project Billing Admin Panel"
admin.site.site_title = "Project Billing Admin Portal"
admin.site.index_title = "Projects, billing and financial roll-up"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include('backend.core.urls')),
    path('api/v1/', include('backend.projects.urls')),
    path('api/v1/', include('backend.billing.urls')),
    path('api/v1/', include('backend.reports.urls')),
]
