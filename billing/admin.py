from django.contrib import admin
from .models import ExpertEarning, ExpertEarningsAccount, ExpertWallet, Payment, WalletTransaction


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("stripe_payment_intent_id", "payment_type", "expert", "client", "amount", "bonus_amount", "currency", "status", "created_at")
    list_filter = ("status", "currency", "payment_type")
    search_fields = ("stripe_payment_intent_id",)
    readonly_fields = ("stripe_payment_intent_id", "created_at", "updated_at")


@admin.register(ExpertWallet)
class ExpertWalletAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "expert", "currency", "balance", "real_balance", "updated_at")
    list_filter = ("currency",)
    search_fields = ("user__user__email", "expert__user__email")
    # Balances change only through wallet_service
    readonly_fields = ("balance", "real_balance", "updated_at")


@admin.register(WalletTransaction)
class WalletTransactionAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "expert", "type", "source", "amount", "currency", "order", "created_at")
    list_filter = ("type", "source", "currency")
    search_fields = ("description", "order__order_id")
    readonly_fields = ("created_at",)


@admin.register(ExpertEarningsAccount)
class ExpertEarningsAccountAdmin(admin.ModelAdmin):
    list_display = ("id", "expert", "currency", "balance", "updated_at")
    list_filter = ("currency",)
    readonly_fields = ("balance", "updated_at")


@admin.register(ExpertEarning)
class ExpertEarningAdmin(admin.ModelAdmin):
    list_display = ("id", "expert", "type", "gross_amount", "platform_fee", "net_amount", "currency", "order", "created_at")
    list_filter = ("type", "currency")
    search_fields = ("order__order_id",)
    readonly_fields = ("created_at",)
