from django.contrib import admin, messages

from billing.services.settlement_service import STATUS_ERROR, settle_call
from .models import ConsultationOrder


@admin.register(ConsultationOrder)
class ConsultationOrderAdmin(admin.ModelAdmin):
    list_display = ("order_id", "user", "expert", "status", "expert_rate_per_minute", "currency", "duration_seconds", "cost", "expert_earnings", "created_at")
    list_filter = ("status", "currency", "consultation_type")
    search_fields = ("order_id", "stream_call_cid", "user__user__email", "expert__user__email")
    readonly_fields = ("created_at", "duration_seconds", "cost", "platform_fee_amount", "expert_earnings")
    fieldsets = (
        ('Order', {
            'fields': ('order_id', 'user', 'expert', 'status', 'consultation_type', 'category')
        }),
        ('Pricing', {
            'fields': ('expert_rate_per_minute', 'currency', 'max_allowed_duration', 'platform_fee_percent')
        }),
        ('Call', {
            'fields': ('stream_call_cid', 'user_joined_at', 'expert_joined_at', 'both_participants_joined_at', 'start_time', 'end_time')
        }),
        ('Legacy Presence', {
            'fields': ('user_intervals', 'expert_intervals'),
            'classes': ('collapse',),
            'description': 'Format: [{"joined_at": "YYYY-MM-DDTHH:MM:SS+00:00", "left_at": "YYYY-MM-DDTHH:MM:SS+00:00" | null}]'
        }),
        ('Settlement', {
            'fields': ('duration_seconds', 'cost', 'platform_fee_amount', 'expert_earnings', 'created_at'),
            'description': 'Written once by settlement.'
        }),
    )
    actions = ['settle_selected']

    def settle_selected(self, request, queryset):
        """Run settlement for the selected orders (safe to repeat)"""
        for order in queryset:
            result = settle_call(order.call_reference)
            level = messages.ERROR if result.status == STATUS_ERROR else messages.INFO
            self.message_user(request, f"{order.order_id}: {result.status} {result.message}", level=level)
    settle_selected.short_description = "Settle selected consultations"
