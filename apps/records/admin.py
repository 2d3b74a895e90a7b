from django.contrib import admin

from apps.records.models import InboundRecord, InboundRecordMeta


class InboundRecordMetaInline(admin.TabularInline):
    model = InboundRecordMeta
    extra = 0
    can_delete = False
    readonly_fields = ("key", "value")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(InboundRecord)
class InboundRecordAdmin(admin.ModelAdmin):
    list_display = ("title", "channel", "status", "created_at")
    list_filter = ("status", "channel")
    search_fields = ("title", "content", "meta__value")
    readonly_fields = ("id", "channel", "title", "content", "excerpt", "status", "created_at")
    inlines = [InboundRecordMetaInline]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
