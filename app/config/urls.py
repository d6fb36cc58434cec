"""
Root URL configuration.

URL Structure:
    /admin/                        - Django admin interface
    /webhooks/payments/            - Payment gateway webhook endpoint (POST)
"""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("", include("settlement.urls")),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Settlement Admin"
admin.site.site_title = "Settlement Admin Portal"
admin.site.index_title = "Marketplace settlement"
