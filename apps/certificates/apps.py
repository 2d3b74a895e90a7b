from django.apps import AppConfig


class CertificatesConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.certificates"
    verbose_name = "Gift certificates"

    def ready(self):
        from apps.certificates import receivers  # noqa: F401
