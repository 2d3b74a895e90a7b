from django.contrib import admin

from apps.certificates.models import CertificateBalance, ManualTransaction, ManualTransactionLine


@admin.register(CertificateBalance)
class CertificateBalanceAdmin(admin.ModelAdmin):
    list_display = ("cert_code", "serial_raw", "original_amount", "remaining_amount", "status", "updated_at")
    list_filter = ("status",)
    search_fields = ("cert_code",)
    readonly_fields = (
        "id",
        "cert_code",
        "serial_raw",
        "original_amount",
        "remaining_amount",
        "external_record",
        "last_order",
        "created_at",
        "updated_at",
    )

    def has_delete_permission(self, request, obj=None):
        return False


class ManualTransactionLineInline(admin.TabularInline):
    model = ManualTransactionLine
    extra = 0
    can_delete = False
    readonly_fields = ("position", "name", "price")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(ManualTransaction)
class ManualTransactionAdmin(admin.ModelAdmin):
    list_display = ("cert_code", "items_total", "created_by", "created_at")
    search_fields = ("cert_code",)
    readonly_fields = ("id", "balance", "cert_code", "serial_raw", "items_total", "created_by", "created_at")
    inlines = [ManualTransactionLineInline]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
