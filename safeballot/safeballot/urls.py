"""
URL configuration for the safeballot project.

All API endpoints live under `api/`; the admin site is mounted at `admin/`.
"""
from django.contrib import admin
from django.urls import include, path

api_urlpatterns = [
    path("accounts/", include("accounts.urls")),
    path("ballots/", include("ballots.urls")),
    path("ballots/", include("voting.urls")),
]

urlpatterns = [
    path("api/", include(api_urlpatterns)),
    path("admin/", admin.site.urls),
    path("api-auth/", include("rest_framework.urls")),
]
