"""
URL configuration for the billing engine.
Gateway webhooks and the operator admin; everything else runs in workers.
"""

from django.contrib import admin
from django.urls import include, path

# ===============================================================================
# MAIN URL PATTERNS
# ===============================================================================

urlpatterns = [
    path("admin/", admin.site.urls),
    # External integrations & webhooks
    path("integrations/", include("apps.integrations.urls")),
]
