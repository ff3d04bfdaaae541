"""Main URL mapping configuration file.

The upload pipeline exposes no HTTP endpoints of its own; the admin is
the only UI surface.
"""

from django.contrib import admin
from django.urls import path

urlpatterns = [
    path('admin/', admin.site.urls),
]
