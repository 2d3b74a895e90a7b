from django.contrib import admin

from apps.checkout.models import Order, OrderFee, OrderItem, OrderNote


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0


class OrderFeeInline(admin.TabularInline):
    model = OrderFee
    extra = 0


class OrderNoteInline(admin.TabularInline):
    model = OrderNote
    extra = 0
    readonly_fields = ("note", "created_at")


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "status", "total", "fee_total", "created_at")
    list_filter = ("status",)
    readonly_fields = ("meta", "session_key", "created_at", "updated_at")
    inlines = [OrderItemInline, OrderFeeInline, OrderNoteInline]
