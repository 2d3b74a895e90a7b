from django.contrib import admin
from django.urls import include, path

admin.site.site_header = "Gift certificate ledger"
admin.site.site_title = "Gift certificates"

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/v1/", include("apps.api_urls")),
]
